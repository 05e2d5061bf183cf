from src.provider.identity_resolver import CalendarIdentityResolver
from src.provider.lark_client import LarkClient
from src.provider.oauth import LarkOAuthClient
from src.provider.token_manager import TokenLifecycleManager
from src.provider.token_store import InMemoryTokenStore, JsonFileTokenStore, TokenStore

__all__ = [
    "CalendarIdentityResolver",
    "LarkClient",
    "LarkOAuthClient",
    "TokenLifecycleManager",
    "TokenStore",
    "InMemoryTokenStore",
    "JsonFileTokenStore",
]
