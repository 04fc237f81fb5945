"""Settlement and purchase notifications over publish/subscribe transports."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Union

from ..auction.models import SettlementOutcome
from ..marketplace.models import PurchaseOutcome
from ..transport.canonical_json import canonical_dumps

try:  # pragma: no cover - optional dependency
    from google.cloud import pubsub_v1
except Exception:  # pragma: no cover - fallback when library missing
    pubsub_v1 = None

logger = logging.getLogger(__name__)

Outcome = Union[SettlementOutcome, PurchaseOutcome]


class _PublisherProtocol:
    async def publish(self, outcome: Outcome) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class _LocalPublisher(_PublisherProtocol):
    async def publish(self, outcome: Outcome) -> None:
        attributes = " ".join(f"{key}={value}" for key, value in outcome.message_attributes().items())
        logger.info("[local-pubsub] %s delivered", attributes)


class _PubSubPublisher(_PublisherProtocol):
    def __init__(self, options: Mapping[str, Any]) -> None:
        if pubsub_v1 is None:
            raise RuntimeError("google-cloud-pubsub is required for pubsub backend")
        self._project_id = options.get("project_id")
        if not self._project_id:
            raise ValueError("pubsub backend requires project_id")
        topic = options.get("topic", "auction-settlements")
        self._publisher = pubsub_v1.PublisherClient()
        self._topic = topic if topic.startswith("projects/") else self._publisher.topic_path(self._project_id, topic)

    async def publish(self, outcome: Outcome) -> None:
        message = canonical_dumps(outcome.to_dict())
        future = self._publisher.publish(
            self._topic,
            message,
            **outcome.message_attributes(),
        )
        await asyncio.to_thread(future.result)


class SettlementPublisher:
    def __init__(self, backend: str = "local", options: Mapping[str, Any] | None = None) -> None:
        options = options or {}
        self.backend = backend
        if backend == "pubsub":
            self._publisher: _PublisherProtocol = _PubSubPublisher(options)
        elif backend == "local":
            self._publisher = _LocalPublisher()
        else:
            raise ValueError(f"unknown events backend {backend}")

    async def publish(self, outcome: Outcome) -> None:
        await self._publisher.publish(outcome)
