"""User-facing notices (the toasts of a UI, log lines for the CLI)."""

from __future__ import annotations

from typing import Protocol

import structlog
from pydantic import BaseModel

from taskdesk_shared.schemas.common import NoticeVariant

log = structlog.get_logger()


class Notice(BaseModel):
    title: str
    description: str = ""
    variant: NoticeVariant = NoticeVariant.DEFAULT

    @classmethod
    def error(cls, title: str, description: str = "") -> "Notice":
        return cls(title=title, description=description, variant=NoticeVariant.DESTRUCTIVE)


class Notifier(Protocol):
    def notify(self, notice: Notice) -> None: ...


class LogNotifier:
    """Writes notices to the structured log."""

    def notify(self, notice: Notice) -> None:
        if notice.variant == NoticeVariant.DESTRUCTIVE:
            log.warning("notice", title=notice.title, description=notice.description)
        else:
            log.info("notice", title=notice.title, description=notice.description)
