"""Run the session poller in the foreground."""

import json
import time

from django.core.management.base import BaseCommand

from apps.workers.poller import get_session_poller


class Command(BaseCommand):
    help = "Poll agent runtime sessions and reconcile protocols until interrupted."

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single cycle, print its report and exit.",
        )

    def handle(self, *args, **options):
        poller = get_session_poller()
        if options["once"]:
            report = poller.run_cycle()
            self.stdout.write(json.dumps(report.as_dict(), indent=2))
            return

        if not poller.start():
            self.stderr.write(self.style.WARNING("Session poller already running."))
            return
        self.stdout.write(self.style.SUCCESS(f"Session poller started (every {poller.interval}s)."))
        try:
            while poller.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            poller.stop()
            self.stdout.write("Session poller stopped.")
