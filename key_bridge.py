import os
from typing import Optional, Protocol

from dotenv import load_dotenv


class KeyBridge(Protocol):
    """Where the Gemini credential comes from and how the user picks one."""

    async def has_selected_api_key(self) -> bool: ...

    async def open_select_key(self, api_key: Optional[str] = None) -> None: ...

    def get_api_key(self) -> Optional[str]: ...


class EnvKeyBridge:
    """Key bridge backed by GEMINI_API_KEY, replaceable from the key screen.

    Selecting without a key re-reads .env so a key added there after
    start-up is picked up.
    """

    def __init__(self, env_var: str = "GEMINI_API_KEY"):
        self.env_var = env_var
        self._api_key = os.environ.get(env_var)

    async def has_selected_api_key(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    async def open_select_key(self, api_key: Optional[str] = None) -> None:
        if api_key is not None:
            self._api_key = api_key.strip() or None
            return
        load_dotenv(override=True)
        self._api_key = os.environ.get(self.env_var)

    def get_api_key(self) -> Optional[str]:
        return self._api_key
