from __future__ import annotations

import random
from typing import Callable, ContextManager, Optional, Protocol

from flickmeter.logging import get_logger
from flickmeter.service.errors import ProvisioningExhausted, ServerError
from flickmeter.service.identity import VerifiedIdentity
from flickmeter.service.retry import RetryExhausted, is_constraint_violation, retry_on
from flickmeter.storage.errors import ConstraintViolation
from flickmeter.storage.models import User

logger = get_logger(__name__)

USERNAME_MIN_LENGTH = 5
USERNAME_MAX_LENGTH = 30

_ADJECTIVES = (
    "Swift", "Fast", "Cool", "Clever", "Bright", "Bold", "Lucky", "Chill",
    "Creative", "Brave", "Happy", "Fierce", "Gentle", "Mighty", "Sly", "Wise",
    "Nimble", "Sharp", "Witty", "Energetic", "Quick", "Silent", "Jolly",
    "Daring", "Fearless", "Radiant", "Glorious", "Honest", "Lively", "Curious",
    "Majestic", "Valiant", "Vivid", "Playful", "Serene", "Heroic", "Gracious",
    "Cheerful", "Cunning", "Gallant", "Luminous", "Noble", "Optimistic",
    "Persistent", "Rebellious", "Vibrant", "Whimsical", "Zesty", "Zealous",
    "Agile", "Alert", "Amused", "Bouncy", "Brilliant", "Calm", "Charming",
    "Dazzling", "Delightful", "Determined", "Eager", "Fabulous", "Faithful",
    "Fancy", "Flawless", "Friendly", "Funny", "Gleaming", "Graceful",
    "Inspiring", "Jovial", "Kind", "Magical", "Peaceful", "Proud",
    "Respectful", "Sassy", "Sincere", "Smart", "Snappy", "Sociable", "Strong",
    "Stylish", "Sunny", "Talented", "Thankful", "Unique", "Upbeat", "Youthful",
)

_ANIMALS = (
    "Lion", "Tiger", "Falcon", "Bear", "Wolf", "Panda", "Shark", "Eagle",
    "Fox", "Hawk", "Panther", "Otter", "Cheetah", "Jaguar", "Dolphin", "Lynx",
    "Raven", "Stallion", "Buffalo", "Cobra", "Moose", "Badger", "Cougar",
    "Elephant", "Hippo", "Gorilla", "Kangaroo", "Leopard", "Raccoon",
    "Seahorse", "Swan", "TigerShark", "Vulture", "Walrus", "Zebra", "Alligator",
    "Bison", "Camel", "Dragon", "Fennec", "Gazelle", "Heron", "Iguana", "Jackal",
    "Koala", "Marmot", "Narwhal", "Ocelot", "Penguin", "Quokka", "Rattlesnake",
    "Salamander", "Toucan", "Urial", "Viper", "Wombat", "Xerus", "Yak", "Zorilla",
    "Albatross", "Barracuda", "Caribou", "Donkey", "Emu", "Ferret", "Giraffe",
    "Hedgehog", "Impala", "Jay", "Kiwi", "Lemur", "Mole", "Numbat", "Ostrich",
    "Porcupine", "Quail", "Rabbit", "Salmon", "Tapir", "Urchin", "Vicuna",
    "Wallaby", "Xantus", "Yellowtail", "Zebu", "Armadillo", "Beaver", "Catfish",
    "Dugong", "Eland", "Flamingo", "Goose", "Hummingbird", "Ibex", "Jellyfish",
    "Kudu", "Lobster", "Manatee", "Newt", "Octopus", "Platypus", "Quetzal",
    "Reindeer", "Seagull", "Tarantula", "Urutu", "VultureBat", "Warthog",
)

_rng = random.SystemRandom()


def generate_username(rng: Optional[random.Random] = None) -> str:
    """Build an ``<Adjective><Animal><number>`` handle, e.g. ``SwiftOtter40213``."""
    rng = rng or _rng
    return f"{rng.choice(_ADJECTIVES)}{rng.choice(_ANIMALS)}{rng.randrange(1_000_000)}"


def is_acceptable_username(name: str) -> bool:
    if not name or any(ch.isspace() for ch in name):
        return False
    return USERNAME_MIN_LENGTH <= len(name) <= USERNAME_MAX_LENGTH


class ProvisioningTransaction(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def insert_user(
        self, email: str, username: str, avatar_url: Optional[str] = None
    ) -> User: ...


class UserStore(Protocol):
    def provisioning(self) -> ContextManager[ProvisioningTransaction]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...


class UserDirectory:
    """Find-or-create of local users keyed by verified email."""

    def __init__(
        self,
        store: UserStore,
        *,
        username_factory: Callable[[], str] = generate_username,
        retry_budget: int = 10,
        provisioning_attempts: int = 3,
    ) -> None:
        self.store = store
        self.username_factory = username_factory
        self.retry_budget = retry_budget
        self.provisioning_attempts = provisioning_attempts

    def read_or_create(self, identity: VerifiedIdentity) -> tuple[User, bool]:
        """Return ``(user, is_new)`` for the identity's email.

        A concurrent request may insert the same email between our lookup and
        our insert; that surfaces as an email constraint violation and the
        whole pass is re-run, at which point the lookup finds the winner.
        """

        def _on_email_race(attempt: int, exc: Exception) -> None:
            logger.info("user_provisioning_email_race", attempt=attempt)

        try:
            return retry_on(
                lambda attempt: self._read_or_create_once(identity),
                attempts=self.provisioning_attempts,
                should_retry=is_constraint_violation("email"),
                on_retry=_on_email_race,
            )
        except RetryExhausted as exc:
            logger.error("user_provisioning_email_race_exhausted", attempts=exc.attempts)
            raise ServerError(
                "user provisioning did not settle", detail={"attempts": exc.attempts}
            ) from exc

    def _read_or_create_once(self, identity: VerifiedIdentity) -> tuple[User, bool]:
        with self.store.provisioning() as tx:
            existing = tx.find_by_email(identity.email)
            if existing is not None:
                return existing, False
            user = self._insert(tx, identity)
        logger.info("user_provisioned", user_id=user.id, username=user.username)
        return user, True

    def _insert(self, tx: ProvisioningTransaction, identity: VerifiedIdentity) -> User:
        candidate = identity.display_name if is_acceptable_username(identity.display_name) else ""
        avatar_url = identity.avatar_url or None

        def _attempt(attempt: int) -> User:
            nonlocal candidate
            if not candidate:
                candidate = self.username_factory()
            try:
                return tx.insert_user(identity.email, candidate, avatar_url)
            except ConstraintViolation as exc:
                if exc.constraint == "username":
                    candidate = ""
                raise

        def _on_username_taken(attempt: int, exc: Exception) -> None:
            logger.debug("username_taken", attempt=attempt, budget=self.retry_budget)

        try:
            return retry_on(
                _attempt,
                attempts=self.retry_budget,
                should_retry=is_constraint_violation("username"),
                on_retry=_on_username_taken,
            )
        except RetryExhausted as exc:
            logger.error("username_generation_exhausted", attempts=exc.attempts)
            raise ProvisioningExhausted(exc.attempts) from exc
