"""Python client for the LinkBio identity endpoints."""

from linkbio.client.adapter import IdentityClient
from linkbio.client.bridge import BridgeOutcome, TokenBridge
from linkbio.client.storage import FileTokenStorage, StorageChange, TokenStorage

__all__ = [
    "BridgeOutcome",
    "FileTokenStorage",
    "IdentityClient",
    "StorageChange",
    "TokenBridge",
    "TokenStorage",
]
