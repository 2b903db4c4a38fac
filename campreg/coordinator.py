"""
Wiring for the registration coordinator

Builds every component from one Config so the HTTP app and the CLI share the
same construction.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .common.config import Config
from .common.executor import AttemptExecutor, build_executor
from .common.notifications import NotificationManager
from .common.store import StateStore
from .watch.classifier import OpenSignalClassifier
from .watch.poller import AdaptivePoller
from .watch.window import SeasonCalendar, TargetWindowResolver
from .challenge.broker import InterruptionBroker
from .challenge.checkpoints import CheckpointStore
from .challenge.links import MagicLinkSigner
from .challenge.replies import InboundReplyRouter
from .settlement.committer import SettlementCommitter
from .settlement.payments import PaymentProcessor, build_processor

logger = logging.getLogger(__name__)


@dataclass
class Coordinator:
    config: Config
    store: StateStore
    executor: AttemptExecutor
    notifications: NotificationManager
    poller: AdaptivePoller
    classifier: OpenSignalClassifier
    checkpoints: CheckpointStore
    broker: InterruptionBroker
    replies: InboundReplyRouter
    committer: SettlementCommitter

    @classmethod
    def build(
        cls,
        config: Config,
        store: Optional[StateStore] = None,
        executor: Optional[AttemptExecutor] = None,
        notifications: Optional[NotificationManager] = None,
        processor: Optional[PaymentProcessor] = None,
        classifier: Optional[OpenSignalClassifier] = None,
    ) -> "Coordinator":
        if store is None:
            store = StateStore(config.storage.state_file)
            store.load()

        executor = executor or build_executor(config.executor)
        notifications = notifications or NotificationManager(config.notifications, store)
        classifier = classifier or OpenSignalClassifier(config.polling)

        resolver = TargetWindowResolver(SeasonCalendar(config.window.season_guesses))
        poller = AdaptivePoller(store, resolver, classifier, executor)

        checkpoints = CheckpointStore(config.checkpoints)
        signer = MagicLinkSigner(config.app.base_url, config.app.link_signing_secret or "")
        broker = InterruptionBroker(
            config.challenge, store, notifications, signer, checkpoints, executor
        )

        return cls(
            config=config,
            store=store,
            executor=executor,
            notifications=notifications,
            poller=poller,
            classifier=classifier,
            checkpoints=checkpoints,
            broker=broker,
            replies=InboundReplyRouter(store, broker),
            committer=SettlementCommitter(
                store, processor or build_processor(config.payments), config.payments
            ),
        )

    async def aclose(self):
        await self.classifier.aclose()
        await self.executor.aclose()
        await self.notifications.aclose()
        await self.committer.processor.aclose()
