from django.core.management.base import BaseCommand, CommandError

from stock.exceptions import ItemNotFoundError
from stock.models import MeatStockItem
from stock.services import get_ledger


class Command(BaseCommand):
    help = "Compare each meat stock item's current stock with the sum of its log entries."

    def add_arguments(self, parser):
        parser.add_argument(
            "--item",
            dest="item_ids",
            action="append",
            default=[],
            help="Only check this item id (repeatable).",
        )

    def handle(self, *args, **options):
        ledger = get_ledger()
        item_ids = options["item_ids"] or list(MeatStockItem.objects.order_by("created_at").values_list("id", flat=True))

        self.stdout.write(self.style.MIGRATE_HEADING(f"Checking {len(item_ids)} meat stock item(s)"))

        mismatches = []
        for item_id in item_ids:
            try:
                result = ledger.reconcile_item(item_id)
            except ItemNotFoundError as exc:
                raise CommandError(f"Meat stock item {item_id} does not exist.") from exc
            if not result.is_consistent:
                mismatches.append(result)
                self.stdout.write(
                    self.style.WARNING(
                        f"  {result.item_id}: current_stock={result.current_stock} log_total={result.log_total}"
                    )
                )

        if mismatches:
            raise CommandError(f"{len(mismatches)} meat stock item(s) disagree with their logs.")
        self.stdout.write(self.style.SUCCESS("All meat stock items match their logs."))
