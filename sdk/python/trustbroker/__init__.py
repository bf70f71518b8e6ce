import logging

from .client import (
    APIVersion,
    DEFAULT_BROKER_URL,
    AuthStrategy,
    BearerAuth,
    ClientSignatureAuth,
    ProviderDataResponse,
    TrustBrokerClient,
)
from .config import TrustBrokerConfig
from .errors import (
    ErrorCode,
    InitializationError,
    RequestError,
    SigningError,
    TrustBrokerError,
    VerificationError,
)
from .polling import ConsentPoller, PollConfig, RequestRecord, RequestStatus
from .signing import (
    CANONICAL_FORM_VERSION,
    KeyMaterial,
    canonical_sha256_hex,
    canonicalize,
    sign_payload,
    stable_json,
    verify_signature,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "APIVersion",
    "DEFAULT_BROKER_URL",
    "AuthStrategy",
    "BearerAuth",
    "ClientSignatureAuth",
    "ProviderDataResponse",
    "TrustBrokerClient",
    "TrustBrokerConfig",
    "ErrorCode",
    "InitializationError",
    "RequestError",
    "SigningError",
    "TrustBrokerError",
    "VerificationError",
    "ConsentPoller",
    "PollConfig",
    "RequestRecord",
    "RequestStatus",
    "CANONICAL_FORM_VERSION",
    "KeyMaterial",
    "canonical_sha256_hex",
    "canonicalize",
    "sign_payload",
    "stable_json",
    "verify_signature",
]
