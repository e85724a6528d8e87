"""
Management command to print the progress dashboard of a stored session.

Shows sparks, accuracy, the most frequent mistake categories, pending coaching
missions and the lesson library, as the "My Brain" screen does.
"""

import json

from django.core.management.base import BaseCommand, CommandError
from mentor.conf import build_orchestrator
from mentor.localization import SUPPORT_LANGUAGES, translate_category
from mentor.models import SavedSession


class Command(BaseCommand):
    help = "Print the progress dashboard of a saved learner session"

    def add_arguments(self, parser):
        parser.add_argument('key', type=str, help='Session key (e.g. user:42)')
        parser.add_argument(
            '--language',
            type=str,
            choices=SUPPORT_LANGUAGES,
            default=None,
            help='Language for category names (default: the session language)',
        )
        parser.add_argument(
            '--json',
            action='store_true',
            help='Print the dashboard as JSON',
        )

    def handle(self, *args, **options):
        row = SavedSession.objects.filter(key=options['key']).first()
        if row is None:
            raise CommandError(f"No saved session with key '{options['key']}'")

        orchestrator = build_orchestrator()
        orchestrator.apply_snapshot(row.payload)
        language = options['language'] or orchestrator.language
        dashboard = orchestrator.dashboard()

        if options['json']:
            self.stdout.write(
                json.dumps(
                    {
                        'total_mistakes': dashboard['total_mistakes'],
                        'balance': dashboard['balance'],
                        'tier': dashboard['tier'],
                        'accuracy': dashboard['accuracy'],
                        'top_categories': dashboard['top_categories'],
                        'pending_missions': dashboard['pending_missions'],
                        'archived_lessons': [
                            lesson.title for lesson in dashboard['archived_lessons']
                        ],
                    },
                    ensure_ascii=False,
                )
            )
            return

        self.stdout.write(f"Session {row.key} ({dashboard['tier']})")
        self.stdout.write(f"  Sparks: {dashboard['balance']}")
        self.stdout.write(f"  Total mistakes: {dashboard['total_mistakes']}")
        self.stdout.write(f"  Accuracy: {dashboard['accuracy']}%")

        if dashboard['top_categories']:
            self.stdout.write('Common pitfalls:')
            for category, count in dashboard['top_categories']:
                label = translate_category(category, language)
                self.stdout.write(f"  {label}: {count}")

        if dashboard['recent_mistakes']:
            self.stdout.write('Recent log:')
            for record in dashboard['recent_mistakes']:
                self.stdout.write(f"  {record.original_text} -> {record.corrected_text}")

        if dashboard['pending_missions']:
            missions = ', '.join(
                translate_category(c, language) for c in dashboard['pending_missions']
            )
            self.stdout.write(self.style.WARNING(f"New missions: {missions}"))

        self.stdout.write(
            self.style.SUCCESS(
                f"{len(dashboard['archived_lessons'])} lessons in the library"
            )
        )
