"""
mentor package - usage credits, mistake analytics and coaching missions.

The domain core (ledger, journal, missions, lesson archive, conversations and
the session orchestrator) is plain Python; Django only provides settings,
snapshot storage and admin.
"""
