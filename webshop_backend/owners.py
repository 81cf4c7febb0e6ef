# webshop_backend/owners.py
import enum
from dataclasses import dataclass
from typing import Optional


class OwnerKind(str, enum.Enum):
    USER = "user"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class CartOwner:
    """Whoever a cart belongs to.

    An authenticated user, or the single shared anonymous bucket used when
    no identity is presented. Both are ordinary values: the cart code only
    ever looks at ``key``.
    """

    kind: OwnerKind
    user_id: Optional[int] = None

    def __post_init__(self):
        if self.kind is OwnerKind.USER and self.user_id is None:
            raise ValueError("user owner requires a user_id")
        if self.kind is OwnerKind.ANONYMOUS and self.user_id is not None:
            raise ValueError("anonymous owner cannot carry a user_id")

    @classmethod
    def for_user(cls, user_id: int) -> "CartOwner":
        return cls(OwnerKind.USER, int(user_id))

    @classmethod
    def anonymous(cls) -> "CartOwner":
        return ANONYMOUS

    @property
    def is_anonymous(self) -> bool:
        return self.kind is OwnerKind.ANONYMOUS

    @property
    def key(self) -> str:
        if self.is_anonymous:
            return OwnerKind.ANONYMOUS.value
        return f"{OwnerKind.USER.value}:{self.user_id}"

    def __str__(self):
        return self.key


ANONYMOUS = CartOwner(OwnerKind.ANONYMOUS)
