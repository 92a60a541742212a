from .errors import UniqueViolation
from .models import GrantOutcome
from .storage import Storage


class EntitlementTracker:
    """Which styles each user owns, plus the account-wide unlock flag."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def has_unlocked(self, user_id: str, item_id: str) -> bool:
        return self.storage.get_entitlement(user_id, item_id) is not None

    def grant(self, user_id: str, item_id: str) -> GrantOutcome:
        # The storage unique index decides the winner between concurrent grants.
        try:
            self.storage.insert_entitlement(user_id, item_id)
        except UniqueViolation:
            return GrantOutcome(already_granted=True)
        return GrantOutcome(already_granted=False)

    def list_unlocked(self, user_id: str) -> set[str]:
        return {e.item_id for e in self.storage.list_entitlements(user_id)}

    def mark_user_unlocked(self, user_id: str) -> None:
        self.storage.set_user_unlocked(user_id)

    def is_user_unlocked(self, user_id: str) -> bool:
        user = self.storage.get_user(user_id)
        return bool(user and user.is_unlocked)
