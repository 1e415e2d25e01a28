"""
Notification system using Apprise.

Sends alerts for: phase failures, completed research sessions and system
errors. No-ops if no APPRISE_URLS are configured — the service degrades to
log-only mode.

Apprise supports 70+ notification platforms via URL schemes. Configure via
APPRISE_URLS in .env. Multiple URLs = comma-separated.
"""

import logging
from functools import lru_cache
from typing import Optional

import apprise

logger = logging.getLogger(__name__)


class Notifier:
    """
    Thin async wrapper around Apprise.
    All public methods are safe to await even when no URLs are configured.
    """

    def __init__(self, urls: list[str]) -> None:
        self._urls = urls
        self._apprise: Optional[apprise.Apprise] = None

        if not urls:
            logger.info("Notifier: no APPRISE_URLS configured — running in log-only mode.")
            return

        self._apprise = apprise.Apprise()
        added = 0
        for url in urls:
            if self._apprise.add(url):
                added += 1
            else:
                logger.warning(f"Notifier: failed to add Apprise URL (invalid scheme?): {url!r}")
        logger.info(f"Notifier: initialized with {added}/{len(urls)} valid endpoint(s).")

    async def send(
        self,
        event_type: str,
        message: str,
        title: Optional[str] = None,
        notify_type: str = apprise.NotifyType.INFO,
    ) -> None:
        """
        Send a notification, or log it when Apprise is not configured.

        event_type picks the default title and tags the log line; notify_type
        is passed through to Apprise (info, success, warning, failure).
        """
        notification_title = title or _default_title(event_type)

        if not self._apprise:
            logger.info(f"[Notification — {event_type}] {notification_title}: {message[:200]}")
            return

        try:
            await self._apprise.async_notify(
                body=message,
                title=notification_title,
                notify_type=notify_type,
            )
            logger.info(f"Notification sent: {event_type}")
        except Exception as e:
            logger.error(f"Failed to send notification ({event_type}): {e}")

    async def phase_failed(self, chat_id: str, phase: int, error: str) -> None:
        message = f"Session {chat_id}\nPhase {phase} failed.\n\nError: {error[:400]}"
        await self.send(
            event_type="phase_failed",
            message=message,
            title=f"Research Phase {phase} Failed",
            notify_type=apprise.NotifyType.FAILURE,
        )

    async def session_completed(
        self,
        chat_id: str,
        paper_count: int,
        solution_count: int,
        final_solution_ready: bool,
    ) -> None:
        """Sent once phase 6 resolves, whether or not it produced a proposal."""
        proposal = "Final proposal ready." if final_solution_ready else "No final proposal (phase 6 failed)."
        message = (
            f"Session {chat_id}\n"
            f"Papers analyzed: {paper_count}\n"
            f"Existing solutions found: {solution_count}\n"
            f"{proposal}"
        )
        await self.send(
            event_type="session_completed",
            message=message,
            title="Research Session Complete",
            notify_type=apprise.NotifyType.SUCCESS if final_solution_ready else apprise.NotifyType.WARNING,
        )

    async def system_error(self, message: str, context: Optional[str] = None) -> None:
        """Convenience method for system-level error alerts."""
        full_message = message
        if context:
            full_message += f"\n\nContext: {context}"
        await self.send(
            event_type="system_error",
            message=full_message,
            title="Research Orchestrator — System Error",
            notify_type=apprise.NotifyType.FAILURE,
        )


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    """Singleton Notifier, initialized once from settings."""
    from app.config import get_settings

    settings = get_settings()
    return Notifier(settings.apprise_url_list)


def _default_title(event_type: str) -> str:
    titles = {
        "phase_failed": "Research Phase Failed",
        "session_completed": "Research Session Complete",
        "system_error": "System Error",
    }
    return titles.get(event_type, f"Research Orchestrator — {event_type.replace('_', ' ').title()}")
