"""
Django management command to verify that every stock record's movement log
adds up to its available count, and to list orders whose stock reservation
is still incomplete
"""
from django.core.management.base import BaseCommand
from backend.inventory import ledger
from backend.inventory.models import StockRecord
from backend.orders.fulfillment import reconcile_fulfillment_status
from backend.orders.models import Order


class Command(BaseCommand):
    help = 'Check the stock movement ledger against stock records and report partially fulfilled orders'

    def add_arguments(self, parser):
        parser.add_argument(
            '--product-id',
            type=int,
            help='Check stock records of a specific product ID only',
        )
        parser.add_argument(
            '--show-all',
            action='store_true',
            help='Show all stock records, not just discrepancies',
        )
        parser.add_argument(
            '--fix-flags',
            action='store_true',
            help='Recompute fulfillment status of partial orders from the movement log',
        )

    def handle(self, *args, **options):
        product_id = options.get('product_id')
        show_all = options.get('show_all', False)
        fix_flags = options.get('fix_flags', False)

        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS("STOCK LEDGER AUDIT"))
        self.stdout.write("=" * 80)

        records = StockRecord.objects.select_related('product', 'color', 'size')
        if product_id:
            records = records.filter(product_id=product_id)
        self.stdout.write(f"Total Stock Records: {records.count()}")
        self.stdout.write("")

        discrepancies = list(ledger.find_discrepancies(records))
        if show_all:
            mismatched = {record.pk for record, _ in discrepancies}
            for record in records.order_by('id'):
                marker = 'MISMATCH' if record.pk in mismatched else 'ok'
                self.stdout.write(
                    f"  #{record.pk} {record}: available {record.available}, "
                    f"movements {ledger.movement_total(record.pk)} [{marker}]"
                )
            self.stdout.write("")

        if discrepancies:
            self.stdout.write(self.style.WARNING(f"Stock records whose movements do not add up: {len(discrepancies)}"))
            for record, total in discrepancies:
                self.stdout.write(
                    f"  - #{record.pk} {record.product.name} (color={record.color_id}, size={record.size_id}): "
                    f"available {record.available}, movements {total}, diff {record.available - total:+d}"
                )
        else:
            self.stdout.write(self.style.SUCCESS("No ledger discrepancies found"))
        self.stdout.write("")

        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS("PARTIALLY FULFILLED ORDERS"))
        self.stdout.write("=" * 80)

        partial = Order.objects.filter(fulfillment_status=Order.FULFILLMENT_PARTIAL).order_by('created_at', 'id')
        if product_id:
            partial = partial.filter(lines__product_id=product_id).distinct()

        fixed = 0
        remaining = 0
        for order in partial:
            if fix_flags:
                value = reconcile_fulfillment_status(order)
                if value != Order.FULFILLMENT_PARTIAL:
                    fixed += 1
                    self.stdout.write(f"  - {order}: marked {value}")
                    continue
            remaining += 1
            self.stdout.write(f"  - {order} (buyer {order.buyer_id}, created {order.created_at:%Y-%m-%d %H:%M:%S})")

        if fix_flags and fixed:
            self.stdout.write(self.style.SUCCESS(f"Fixed fulfillment status of {fixed} order(s)"))
        if remaining:
            self.stdout.write(self.style.WARNING(f"{remaining} order(s) still need resume-fulfillment"))
        else:
            self.stdout.write(self.style.SUCCESS("No partially fulfilled orders"))

        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS("AUDIT COMPLETE"))
        self.stdout.write("=" * 80)
