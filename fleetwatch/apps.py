import threading

from django.apps import AppConfig


class FleetwatchConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "fleetwatch"
    verbose_name = "Fleet positioning"

    def ready(self):
        self._session = None
        self._session_lock = threading.Lock()

    @property
    def session(self):
        """The engine session for this process, built from settings on first use."""
        from .services import FleetSession

        with self._session_lock:
            if self._session is None:
                self._session = FleetSession.from_settings()
            return self._session

    def reset_session(self):
        with self._session_lock:
            session, self._session = self._session, None
        if session is not None:
            session.close()
