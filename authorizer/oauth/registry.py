from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from authorizer.oauth.base import OAuthProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """
    Resolves providers by name (outbound flow) or by token issuer (inbound session check).

    Built once at startup and injected; there is no module-level provider map.
    """

    def __init__(self, providers: Iterable[OAuthProvider] = ()):
        self._by_name: Dict[str, OAuthProvider] = {}
        for p in providers:
            if p.name in self._by_name:
                raise ValueError(f"duplicate provider name: {p.name}")
            self._by_name[p.name] = p

    def by_name(self, name: str) -> Optional[OAuthProvider]:
        return self._by_name.get(name)

    def by_issuer(self, issuer: str) -> Optional[OAuthProvider]:
        if not issuer:
            return None
        for p in self._by_name.values():
            if issuer in p.issuers:
                return p
        return None

    def names(self) -> List[str]:
        return sorted(self._by_name)

    def close(self) -> None:
        for p in self._by_name.values():
            try:
                p.close()
            except Exception as e:
                logger.warning("Provider %s close failed: %s", p.name, str(e))

    def __len__(self) -> int:
        return len(self._by_name)
