"""Async client for the external identity registry.

Endpoints consumed:
- GET /leaves  -> {"leaves": ["0x..", ...]}
- POST /verify {"identityKey": .., "biometricEvidence": ..} -> {"match": bool, "salt": "0x.."}
"""

from dataclasses import dataclass
from typing import Any, List, Optional
import asyncio
import logging

import aiohttp

from .commitments import to_bytes32
from .errors import AuthenticationFailure, InputValidation, RegistryUnavailable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Verification:
    match: bool
    salt: Optional[bytes] = None


class RegistryClient:
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            # one session per call: request handlers may run on different event loops
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=payload) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise RegistryUnavailable(
                            f"registry {method} {path} returned {resp.status}: {body}",
                            code="RegistryHTTPError",
                        )
                    return await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise RegistryUnavailable(f"registry {method} {path} timed out", code="RegistryTimeout") from None
        except aiohttp.ClientError as e:
            raise RegistryUnavailable(f"registry {method} {path} failed: {e}") from e
        except ValueError as e:
            raise RegistryUnavailable(f"registry {method} {path} sent invalid JSON", code="MalformedResponse") from e

    async def fetch_leaves(self) -> List[bytes]:
        data = await self._request("GET", "/leaves")
        leaves = data.get("leaves") if isinstance(data, dict) else None
        if not isinstance(leaves, list):
            raise RegistryUnavailable("registry /leaves response has no leaves list", code="MalformedResponse")
        try:
            return [to_bytes32(leaf, "leaf") for leaf in leaves]
        except InputValidation as e:
            raise RegistryUnavailable(f"registry returned a bad leaf: {e.message}", code="MalformedResponse") from None

    async def verify(self, identity_key: str, biometric_evidence: str) -> Verification:
        data = await self._request(
            "POST", "/verify", {"identityKey": identity_key, "biometricEvidence": biometric_evidence}
        )
        if not isinstance(data, dict):
            raise RegistryUnavailable("registry /verify response is not an object", code="MalformedResponse")
        if not data.get("match"):
            return Verification(match=False)
        salt = data.get("salt")
        if not salt:
            # no salt, no leaf: the identity cannot be proven eligible
            raise AuthenticationFailure("registry matched but returned no salt", code="MissingSalt")
        try:
            return Verification(match=True, salt=to_bytes32(salt, "salt"))
        except InputValidation as e:
            raise RegistryUnavailable(f"registry sent a bad salt: {e.message}", code="MalformedResponse") from None
