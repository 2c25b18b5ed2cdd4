"""Tool-server authorization: OAuth browser flow and credential storage."""

from .credentials import CredentialManager, LocalCredentialCache
from .oauth import OAuthFlowController, OAuthFlowState, OAuthToken, PendingOAuth, extract_code

__all__ = [
    "CredentialManager",
    "LocalCredentialCache",
    "OAuthFlowController",
    "OAuthFlowState",
    "OAuthToken",
    "PendingOAuth",
    "extract_code",
]
