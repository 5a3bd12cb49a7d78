"""Recovery sweep for paid orders whose fulfillment was interrupted.

Intended to run periodically (cron, k8s CronJob). Safe to run concurrently
with live traffic and with other sweeps: every step it repeats is guarded
by a conditional write or a dedupe key.
"""

from django.core.management.base import BaseCommand

from apps.orders import providers


class Command(BaseCommand):
    help = "Resume fulfillment of orders stuck in PAID or FULFILLING."

    def add_arguments(self, parser):
        parser.add_argument(
            "--stale-after",
            type=float,
            default=60.0,
            help="Only resume orders not updated for this many seconds (default: 60).",
        )

    def handle(self, *args, **options):
        done = providers.get_order_service().resume_stuck(options["stale_after"])
        for order_id in done:
            self.stdout.write(f"fulfilled {order_id}")
        self.stdout.write(self.style.SUCCESS(f"{len(done)} order(s) fulfilled"))
