import enum


class OrderStatus(str, enum.Enum):
    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class KeyAlgorithm(str, enum.Enum):
    """The key types an order's certificate key pair can have.

    One domain set may have one order per algorithm, each with its own key pair.
    """

    RSA = "rsa"
    """RSA with the configured key size (4096 bits by default)."""
    EC = "ec"
    """ECDSA on the NIST P-256 curve (*prime256v1*)."""
