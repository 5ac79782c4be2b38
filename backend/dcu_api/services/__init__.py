# DCU API Services
from dcu_api.services.auth import AuthService
from dcu_api.services.token_codec import TokenCodec, TokenType
from dcu_api.services.token_service import TokenErrorCode, TokenService
from dcu_api.services.token_store import TokenStore
from dcu_api.services.users import SqlUserDirectory, UserDirectory

__all__ = [
    "AuthService",
    "SqlUserDirectory",
    "TokenCodec",
    "TokenErrorCode",
    "TokenService",
    "TokenStore",
    "TokenType",
    "UserDirectory",
]
