"""
Credential selection, decoupled from any particular host environment.
"""

import logging
from typing import Callable, Optional, Protocol

from .config import GenerationConfig, Modality

logger = logging.getLogger(__name__)


class CredentialBroker(Protocol):
    async def has_credential(self) -> bool: ...

    async def request_credential(self) -> bool: ...


class ConfigCredentialBroker:
    """
    Broker backed by the active `GenerationConfig`.

    There is no interactive key picker on a server: a caller supplies a new key
    through the config update endpoint. A key the provider rejected stays
    blocked until the config resolves to a different one.
    """

    def __init__(self, config_getter: Callable[[], GenerationConfig], modality: Modality = "video"):
        self._config_getter = config_getter
        self._modality = modality
        self._rejected_key: Optional[str] = None

    def _active_key(self) -> Optional[str]:
        config = self._config_getter()
        if not config.has_key(self._modality):
            return None
        return config.resolve(self._modality).api_key

    @property
    def needs_reselection(self) -> bool:
        key = self._active_key()
        return key is None or key == self._rejected_key

    async def has_credential(self) -> bool:
        return not self.needs_reselection

    async def request_credential(self) -> bool:
        available = not self.needs_reselection
        logger.info(f"Credential reselection requested for {self._modality} (usable key={available})")
        return available

    def invalidate(self) -> None:
        """Called when the provider rejected the current key."""
        self._rejected_key = self._active_key()
        if self._rejected_key is not None:
            logger.warning(f"{self._modality} key rejected; blocked until a different key is configured")
