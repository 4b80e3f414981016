from dataclasses import dataclass
from typing import Dict, Optional

from tripbook.auth import TokenService
from tripbook.config import Settings
from tripbook.services.availability import AvailabilityChecker
from tripbook.services.booking_store import BookingStore
from tripbook.services.bookings import BookingStateMachine
from tripbook.services.clock import Clock, utcnow
from tripbook.services.notification_store import NotificationDispatcher, NotificationStore
from tripbook.services.participants import ParticipantDirectory
from tripbook.services.payment_options import PaymentOptionStore
from tripbook.services.policy import VerticalPolicy, build_policies
from tripbook.services.profiles import ProfileRegistry
from tripbook.services.push_sender import PushSender
from tripbook.services.reviews import ReviewAggregator
from tripbook.services.stats import StatsAggregator


@dataclass
class Container:
    settings: Settings
    store: BookingStore
    tokens: TokenService
    participants: ParticipantDirectory
    policies: Dict[str, VerticalPolicy]
    notifications: NotificationStore
    notifier: NotificationDispatcher
    availability: AvailabilityChecker
    profiles: ProfileRegistry
    payment_options: PaymentOptionStore
    stats: StatsAggregator
    reviews: ReviewAggregator
    bookings: BookingStateMachine

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        *,
        clock: Clock = utcnow,
        push_sender: Optional[PushSender] = None,
    ) -> "Container":
        settings = settings or Settings.from_env()
        store = BookingStore(settings.db_path)
        participants = ParticipantDirectory(store, clock=clock)
        if settings.participants_seed_path:
            participants.load_seed(settings.participants_seed_path)
        policies = build_policies(settings)
        notifications = NotificationStore(
            push_sender
            or PushSender(
                credentials_path=settings.firebase_credentials_path,
                timeout_seconds=settings.notification_timeout_seconds,
            )
        )
        notifier = NotificationDispatcher(notifications)
        availability = AvailabilityChecker(store)
        stats = StatsAggregator(store, policies)
        reviews = ReviewAggregator(store, policies, notifier=notifier, clock=clock)
        return cls(
            settings=settings,
            store=store,
            tokens=TokenService.from_settings(settings, clock=clock),
            participants=participants,
            policies=policies,
            notifications=notifications,
            notifier=notifier,
            availability=availability,
            profiles=ProfileRegistry(store, policies, availability, clock=clock),
            payment_options=PaymentOptionStore(store, policies, clock=clock),
            stats=stats,
            reviews=reviews,
            bookings=BookingStateMachine(
                store,
                policies,
                availability,
                stats,
                reviews,
                notifier,
                clock=clock,
            ),
        )
