"""Outbound reports for delivered and dead-lettered notifications.

The analytics store and the preference service are external collaborators;
they only see records that reached a terminal state.
"""

import logging
from abc import ABC, abstractmethod

from core.matcher.dto import DeliveryRecordDTO

logger = logging.getLogger(__name__)


class DeliveryReporter(ABC):
    @abstractmethod
    def report_delivered(self, record: DeliveryRecordDTO) -> None:
        pass

    @abstractmethod
    def report_dead_letter(self, record: DeliveryRecordDTO) -> None:
        """A record failed permanently and will never be retried."""
        pass


class LoggingDeliveryReporter(DeliveryReporter):
    def report_delivered(self, record: DeliveryRecordDTO) -> None:
        logger.info(
            f"Delivered {record.intent_key} on {record.channel.value} "
            f"after {record.attempt_count} attempt(s)"
        )

    def report_dead_letter(self, record: DeliveryRecordDTO) -> None:
        logger.warning(
            f"Dead-lettered {record.intent_key} on {record.channel.value} "
            f"after {record.attempt_count} attempt(s): {record.last_error}"
        )
