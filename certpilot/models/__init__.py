from .challenge import ChallengeStatus, ChallengeType
from .authorization import AuthorizationStatus
from .order import OrderStatus, KeyAlgorithm
from .account import AccountStatus

__all__ = [
    "AccountStatus",
    "AuthorizationStatus",
    "ChallengeStatus",
    "ChallengeType",
    "KeyAlgorithm",
    "OrderStatus",
]
