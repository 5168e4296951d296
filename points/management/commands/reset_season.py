from django.core.management.base import BaseCommand

from points.services import RankingService


class Command(BaseCommand):
    help = "Starts a new season: zeroes season points and clears ranks"

    def add_arguments(self, parser):
        parser.add_argument(
            "--yes",
            action="store_true",
            help="Skip the confirmation prompt.",
        )

    def handle(self, *args, **options):
        if not options["yes"]:
            answer = input("Reset season points for every user? [y/N] ")
            if answer.strip().lower() not in {"y", "yes"}:
                self.stdout.write(self.style.WARNING("Season reset cancelled."))
                return

        reset = RankingService.reset_season()
        self.stdout.write(self.style.SUCCESS(f"Season reset for {reset} balance(s)."))
