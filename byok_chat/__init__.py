"""BYOK Chat.

Bring-your-own-key chat core: an encrypted local credential vault plus a
streaming provider abstraction.
"""
from .version import __version__
from .vault import CredentialVault, VaultConfig, StorageMode, VaultState
from .chat import ChatService, Conversation, Message, TokenUsage, ChatFragment
from .providers import ProviderRegistry, default_registry

__all__ = [
    "__version__",
    "CredentialVault",
    "VaultConfig",
    "StorageMode",
    "VaultState",
    "ChatService",
    "Conversation",
    "Message",
    "TokenUsage",
    "ChatFragment",
    "ProviderRegistry",
    "default_registry",
]
