"""
frenchmentor package - Django project for the FrenchMentor tutoring core.

FrenchMentor corrects French sentences with Google Gemini and turns the
mistakes into coaching missions.

Key features:
- Spark credits with daily (free) or monthly (pro) refills
- Several independent chat threads per learner
- Mistake journal with per-category counters and an accuracy score
- Coaching missions unlocked every few mistakes in a category
- Whole-session snapshots stored in the database and synced across devices

The project uses Python 3.12 and Django 5.2.
"""
