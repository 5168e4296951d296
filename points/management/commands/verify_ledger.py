from django.core.management.base import BaseCommand, CommandError

from points.models import PointBalance
from points.services import LedgerService


class Command(BaseCommand):
    help = "Checks stored point balances against the transaction log"

    def add_arguments(self, parser):
        parser.add_argument(
            "--user",
            type=int,
            action="append",
            dest="user_ids",
            help="Only verify this user id (repeatable).",
        )

    def handle(self, *args, **options):
        user_ids = options["user_ids"] or list(
            PointBalance.objects.order_by("user_id").values_list("user_id", flat=True)
        )

        mismatched = 0
        for user_id in user_ids:
            report = LedgerService.verify(user_id)
            if report["consistent"]:
                continue
            mismatched += 1
            self.stdout.write(
                self.style.WARNING(
                    f"user={user_id} total={report['total_points']} "
                    f"expected={report['expected_total_points']} "
                    f"earned={report['lifetime_earned']}/{report['expected_lifetime_earned']} "
                    f"spent={report['lifetime_spent']}/{report['expected_lifetime_spent']}"
                )
            )

        if mismatched:
            raise CommandError(f"{mismatched} inconsistent balance(s) found.")
        self.stdout.write(self.style.SUCCESS(f"Verified {len(user_ids)} balance(s)."))
