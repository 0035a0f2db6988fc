"""
Transport - Deliver Protocol Messages to a Management Point

One synchronous HTTP exchange per message, never retried. Multipart
messages are sent with the CCM_POST verb; policy bodies are fetched with GET.

Relay mode: a discovery record that names a relay target causes the server
to authenticate outward to that target. The server reply is not parsed in
that case; acceptance is reported as an Acknowledgment and is no proof that
the outward authentication happened.
"""

from typing import Any, Callable, Dict, Optional

from ..errors import EmptyResponseError, TransportError
from ..logging import LogContext, get_logger
from ..utils.config import SccmSettings, settings as default_settings
from ..utils.http import StandardClient
from .codec import MessageCodec
from .models import Acknowledgment, ProtocolMessage, ServerResponse

logger = get_logger(__name__)


class Transport:
    """
    Send ProtocolMessages over HTTP(S).

    Args:
        settings: Scheme, TLS verification, timeout and User-Agent source
        auth: requests auth object used for authenticated registration
        codec: Codec used to parse replies
        client_factory: Builds a StandardClient for a base URL (tests)
    """

    def __init__(
        self,
        settings: Optional[SccmSettings] = None,
        auth: Any = None,
        codec: Optional[MessageCodec] = None,
        client_factory: Optional[Callable[..., StandardClient]] = None,
    ):
        self.settings = settings or default_settings
        self.auth = auth
        self.codec = codec or MessageCodec(self.settings)
        self._client_factory = client_factory or StandardClient

    def _client(self, destination_host: str, port: Optional[int], authenticated: bool) -> StandardClient:
        return self._client_factory(
            self.settings.base_url(destination_host, port),
            user_agent=self.settings.USER_AGENT,
            verify=self.settings.VERIFY_TLS,
            auth=self.auth if authenticated else None,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )

    def send(self, message: ProtocolMessage, destination_host: str, port: Optional[int] = None) -> ServerResponse:
        """
        Deliver a message and return the decoded server reply.

        In relay mode a non-2xx status is returned as Acknowledgment(False)
        instead of raising.

        Raises:
            TransportError: network failure, or non-2xx status outside relay mode
            MalformedResponseError: reply cannot be decoded
            EmptyResponseError: reply carries no payload
        """
        client = self._client(destination_host, port, message.authenticated)
        with LogContext(request_id=message.message_id):
            logger.info(
                f"Sending {message.type.value} to {destination_host}{message.path}",
                extra={"request_id": message.message_id},
            )
            try:
                response = client.request(
                    message.method,
                    message.path,
                    headers=dict(message.http_headers),
                    data=message.encode() if message.type.is_multipart else None,
                )
            except TransportError as e:
                if message.relay_target is None or e.status_code is None:
                    raise
                return self._acknowledge(message, e.status_code, (e.response_body or "").encode("utf-8"), {})
            finally:
                client.close()

            raw = response.content or b""
            if message.relay_target is not None:
                return self._acknowledge(message, response.status_code, raw, dict(response.headers))

            try:
                return self.codec.parse_response(
                    raw,
                    message.type,
                    content_type=response.headers.get("Content-Type"),
                    status=response.status_code,
                    request_id=message.message_id,
                )
            except EmptyResponseError:
                logger.warning(f"{message.type.value} returned an empty reply")
                raise

    def _acknowledge(
        self, message: ProtocolMessage, status: int, raw: bytes, headers: Dict[str, Any]
    ) -> ServerResponse:
        accepted = 200 <= status < 300
        logger.info(
            f"Relay trigger naming {message.relay_target} {'accepted' if accepted else 'rejected'} (HTTP {status})"
        )
        return ServerResponse(status=status, raw_body=raw, payload=Acknowledgment(accepted=accepted), headers=headers)
