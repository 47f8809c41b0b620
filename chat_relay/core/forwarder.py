# chat_relay/core/forwarder.py
import os
import json
import logging
from typing import Iterable, List, Mapping, Tuple, Union

import httpx

from .config import RelayConfig
from .exceptions import UpstreamUnreachable
from .translator import encode_upstream_payload
from chat_relay.models.api import UpstreamRequest, UpstreamResult

logger = logging.getLogger(' ' * 5 + os.path.basename(__file__))

# Describe the framing of one hop only; never copied to the next one
HOP_HEADERS = frozenset({"content-length", "content-encoding", "transfer-encoding", "connection"})
# Inbound-only headers replaced by the relay's own values. Accept-Encoding is left
# to httpx so upstream bodies only use encodings it can decode.
REPLACED_INBOUND_HEADERS = frozenset({"host", "authorization", "accept-encoding"})

HeaderSource = Union[Mapping[str, str], Iterable[Tuple[str, str]], httpx.Headers]


def filter_hop_headers(headers: HeaderSource, extra_skip: Iterable[str] = ()) -> List[Tuple[str, str]]:
    """Copies headers, dropping the hop-by-hop ones (and any names in `extra_skip`)."""
    skip = HOP_HEADERS | {name.lower() for name in extra_skip}
    items = headers.multi_items() if isinstance(headers, httpx.Headers) else (
        headers.items() if isinstance(headers, Mapping) else headers
    )
    return [(name, value) for name, value in items if name.lower() not in skip]


def create_upstream_client(config: RelayConfig) -> httpx.AsyncClient:
    # No cap on total stream duration, only on connect and on each read
    timeout = httpx.Timeout(config.connect_timeout, read=config.read_timeout)
    return httpx.AsyncClient(timeout=timeout)


class UpstreamInvoker:
    """Sends translated requests to the configured upstream. No retries."""

    def __init__(self, config: RelayConfig, client: httpx.AsyncClient):
        self.config = config
        self.client = client

    def build_headers(self, upstream_request: UpstreamRequest, inbound_headers: HeaderSource) -> httpx.Headers:
        headers = httpx.Headers(filter_hop_headers(inbound_headers, extra_skip=REPLACED_INBOUND_HEADERS))
        profile = self.config.profile

        for name, value in profile.required_headers.items():
            headers[name] = value

        api_key = self.config.upstream_api_key
        if api_key:
            headers[profile.auth_header] = f"{profile.auth_scheme} {api_key}" if profile.auth_scheme else api_key
        elif not profile.auth_optional:
            logger.error(f"API key for provider '{profile.name}' is required but not configured (header '{profile.auth_header}' will be missing).")

        headers["Content-Type"] = "application/json"
        if upstream_request.stream:
            headers["Accept"] = "text/event-stream"
        return headers

    async def send(self, upstream_request: UpstreamRequest, inbound_headers: HeaderSource) -> UpstreamResult:
        """
        Forwards one request.

        Streaming calls return the still-open `httpx.Response` in
        `UpstreamResult.response`; the caller owns it and must close it.
        Error statuses (>= 400) always come back fully buffered.
        """
        profile = self.config.profile
        target_url = self.config.target_url
        payload = encode_upstream_payload(upstream_request, profile)
        headers = self.build_headers(upstream_request, inbound_headers)

        logger.info(f"Forwarding to {profile.name}: URL={target_url}, Payload_Model={payload['model']}, Stream={upstream_request.stream}")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Modified request body: {json.dumps(payload)[:2000]}")

        request = self.client.build_request("POST", target_url, headers=headers, json=payload)
        try:
            response = await self.client.send(request, stream=upstream_request.stream)
        except httpx.TimeoutException as e:
            logger.error(f"Request timed out requesting {profile.name}: {type(e).__name__} - {e}")
            raise UpstreamUnreachable(f"Timed out reaching upstream provider '{profile.name}'.") from e
        except httpx.TransportError as e:
            # Covers connection errors, DNS errors etc.
            logger.error(f"Network error requesting {profile.name}: {type(e).__name__} - {e}")
            raise UpstreamUnreachable(f"Could not reach upstream provider '{profile.name}'.") from e

        logger.info(f"Received response from {profile.name}: Status Code={response.status_code}")
        response_headers = filter_hop_headers(response.headers)

        if upstream_request.stream and response.status_code < 400:
            return UpstreamResult(status_code=response.status_code, headers=response_headers, response=response)

        try:
            body = await response.aread()
        except httpx.HTTPError as e:
            logger.error(f"Error reading response body from {profile.name}: {type(e).__name__} - {e}")
            raise UpstreamUnreachable(f"Lost connection to upstream provider '{profile.name}' while reading its response.") from e
        finally:
            await response.aclose()

        if response.status_code >= 400:
            logger.warning(f"Error from {profile.name} ({response.status_code}). Response body: {body[:500]!r}")
        return UpstreamResult(status_code=response.status_code, headers=response_headers, body=body)
