"""Channel that writes alerts to the application log."""

from __future__ import annotations

import logging

from vesting_ledger.alerter.models import FormattedAlert

logger = logging.getLogger(__name__)


class LogChannel:
    name = "log"

    def __init__(self, level: int = logging.WARNING) -> None:
        self._level = level

    async def send(self, alert: FormattedAlert) -> bool:
        logger.log(self._level, "%s\n%s", alert.title, alert.body)
        return True
