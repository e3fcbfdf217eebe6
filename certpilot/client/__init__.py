from .client import AcmeClient
from .challenge import Challenge, Dns01Credential, Http01Credential
from .challenge_solver import ChallengeSolver, ManualSolver
from .exceptions import (
    AcmeClientException,
    AcmeResponseError,
    AccountError,
    AuthorizationError,
    CAVerificationTimeout,
    ChallengeFailed,
    CouldNotCompleteChallenge,
    DirectoryError,
    KeyGenerationError,
    LocalVerificationTimeout,
    NonceError,
    OrderError,
    PreconditionError,
    VerificationTimeout,
)
from .order import CertificateFiles, OrderManager
from .polling import Clock, RetryPolicy
from .session import AcmeSession

__all__ = [
    "AcmeClient",
    "AcmeSession",
    "OrderManager",
    "CertificateFiles",
    "Challenge",
    "Http01Credential",
    "Dns01Credential",
    "ChallengeSolver",
    "ManualSolver",
    "Clock",
    "RetryPolicy",
    "AcmeClientException",
    "AcmeResponseError",
    "AccountError",
    "AuthorizationError",
    "CAVerificationTimeout",
    "ChallengeFailed",
    "CouldNotCompleteChallenge",
    "DirectoryError",
    "KeyGenerationError",
    "LocalVerificationTimeout",
    "NonceError",
    "OrderError",
    "PreconditionError",
    "VerificationTimeout",
]
