from django.core.management.base import BaseCommand

from points.services import RankingService


class Command(BaseCommand):
    help = "Recalculates the rank of every point balance"

    def handle(self, *args, **options):
        ranked = RankingService.recalculate_all()
        self.stdout.write(self.style.SUCCESS(f"Ranked {ranked} balance(s)."))
