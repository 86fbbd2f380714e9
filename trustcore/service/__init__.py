from trustcore.service.auth import AuthService
from trustcore.service.oauth import OAuthEngine, OAuthProvider
from trustcore.service.sessions import SessionTracker
from trustcore.service.tokens import TokenEngine

__all__ = ["AuthService", "OAuthEngine", "OAuthProvider", "SessionTracker", "TokenEngine"]
