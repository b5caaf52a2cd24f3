"""
Async client for an IPFS node's Kubo RPC API.

Only two calls are used:
    POST /api/v0/add          multipart upload, returns {"Hash": <cid>, ...}
    POST /api/v0/cat?arg=cid  streams the stored bytes back

Content addressing makes the store write-once from our point of view:
uploading different bytes always yields a different CID.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("not found", "no link named", "invalid path", "invalid cid")


class StoreUnavailable(RuntimeError):
    """The IPFS node could not be reached or returned a server error."""


class ContentNotFound(RuntimeError):
    """The requested CID is not available from the IPFS node."""


class IPFSClient:
    """Thin async wrapper over the Kubo RPC endpoints we need."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Base URL of the Kubo RPC API (e.g. "http://127.0.0.1:5001").
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
        """
        if not url:
            raise ValueError("IPFS URL cannot be empty")
        self.url = url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.url, timeout=self.timeout, transport=self._transport
        )

    async def upload(self, data: bytes) -> str:
        """Store bytes and return their CID.

        Raises:
            StoreUnavailable: on transport errors, timeouts or non-2xx replies.
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    "/api/v0/add", files={"file": ("blob", data)}
                )
        except httpx.HTTPError as exc:
            logger.error("IPFS upload failed: %s", exc)
            raise StoreUnavailable(f"IPFS upload failed: {exc}") from exc

        if response.status_code != 200:
            message = _error_message(response)
            logger.error("IPFS upload failed: HTTP %s: %s", response.status_code, message)
            raise StoreUnavailable(
                f"IPFS upload failed: HTTP {response.status_code}: {message}"
            )

        try:
            cid = response.json()["Hash"]
        except (ValueError, KeyError) as exc:
            raise StoreUnavailable(
                f"IPFS upload returned an unexpected body: {response.text[:200]}"
            ) from exc
        logger.debug("Uploaded %d bytes to IPFS as %s", len(data), cid)
        return cid

    async def retrieve(self, cid: str) -> bytes:
        """Return exactly the bytes stored under a CID.

        Raises:
            ContentNotFound: if the node reports the CID or path as missing.
            StoreUnavailable: on transport errors, timeouts or other failures.
        """
        chunks = []
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/api/v0/cat", params={"arg": cid}
                ) as response:
                    if response.status_code != 200:
                        await response.aread()
                        self._raise_for_cat(cid, response)
                    async for chunk in response.aiter_bytes():
                        chunks.append(chunk)
        except httpx.HTTPError as exc:
            logger.error("IPFS retrieval failed for %s: %s", cid, exc)
            raise StoreUnavailable(f"IPFS retrieval failed: {exc}") from exc
        return b"".join(chunks)

    @staticmethod
    def _raise_for_cat(cid: str, response: httpx.Response) -> None:
        message = _error_message(response)
        logger.error(
            "IPFS retrieval failed for %s: HTTP %s: %s", cid, response.status_code, message
        )
        if response.status_code == 404 or any(
            marker in message.lower() for marker in _NOT_FOUND_MARKERS
        ):
            raise ContentNotFound(f"IPFS content not found: {cid}")
        raise StoreUnavailable(
            f"IPFS retrieval failed: HTTP {response.status_code}: {message}"
        )


def _error_message(response: httpx.Response) -> str:
    """Kubo reports errors as {"Message": ..., "Code": ..., "Type": "error"}."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("Message"):
        return str(body["Message"])
    return response.text[:200]
