# DCU API Models
from dcu_api.models.base import BaseModel
from dcu_api.models.token_record import TokenRecord
from dcu_api.models.user import User

__all__ = [
    "BaseModel",
    "TokenRecord",
    "User",
]
