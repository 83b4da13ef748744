"""App config owning the in-process session poller."""

from __future__ import annotations

import logging
import threading

from django.apps import AppConfig
from django.conf import settings

logger = logging.getLogger(__name__)


class WorkersConfig(AppConfig):
    name = "apps.workers"
    label = "workers"
    verbose_name = "Background workers"

    def __init__(self, app_name, app_module) -> None:
        super().__init__(app_name, app_module)
        self._poller = None
        self._poller_lock = threading.Lock()

    def get_poller(self):
        """Lazily build the poller so importing the app never touches the runtime."""
        from apps.workers.poller import SessionPoller

        with self._poller_lock:
            if self._poller is None:
                self._poller = SessionPoller()
            return self._poller

    def ready(self) -> None:
        if getattr(settings, "SESSION_POLLER_AUTOSTART", False):
            started = self.get_poller().start()
            logger.info("session_poller.autostart", extra={"started": started})
