from passkey_server.models.user import User
from passkey_server.models.credential import Credential

__all__ = ["User", "Credential"]
