from .settings import GatewaySettings
from .redirects import RedirectPatterns

__all__ = ["GatewaySettings", "RedirectPatterns"]
