from typing import Awaitable, Callable, List, Optional

import jwt
from loguru import logger

from marketchat.utils.errors import NotAuthenticatedError
from marketchat.utils.security import decode_access_token


AuthChangeCallback = Callable[[Optional[str]], Awaitable[None]]


class TokenIdentityProvider:
    """Current actor for one client connection, derived from its bearer token.

    Sessions and view models receive this object explicitly instead of
    reading global auth state.  ``sign_in``/``sign_out`` notify every
    registered ``on_auth_change`` callback with the new actor id (or None).
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self._actor_id: Optional[str] = None
        self._callbacks: List[AuthChangeCallback] = []
        if token:
            self._actor_id = self._decode(token)

    @staticmethod
    def _decode(token: str) -> str:
        try:
            payload = decode_access_token(token)
        except jwt.PyJWTError as exc:
            raise NotAuthenticatedError("Invalid or expired token") from exc
        sub = payload.get("sub")
        if not sub:
            raise NotAuthenticatedError("Token has no subject")
        return str(sub)

    def get_current_actor(self) -> Optional[str]:
        return self._actor_id

    def on_auth_change(self, callback: AuthChangeCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unregister() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return _unregister

    async def sign_in(self, token: str) -> str:
        self._actor_id = self._decode(token)
        logger.debug("Actor {} signed in", self._actor_id)
        await self._notify()
        return self._actor_id

    async def sign_out(self) -> None:
        logger.debug("Actor {} signed out", self._actor_id)
        self._actor_id = None
        await self._notify()

    async def _notify(self) -> None:
        for callback in list(self._callbacks):
            await callback(self._actor_id)
