import requests
from requests.adapters import HTTPAdapter
from typing import Optional, Dict, Any

from ..errors import TransportError
from ..logging import get_logger

logger = get_logger(__name__)

# Connection pool configuration
DEFAULT_POOL_CONNECTIONS = 4
DEFAULT_POOL_MAXSIZE = 4
DEFAULT_POOL_BLOCK = False


class StandardClient:
    """
    Standard HTTP Client for management point and WinRM exchanges.
    Enforces timeouts, connection pooling and standard headers.

    Every exchange is a single attempt: retries are disabled so that an
    operator action is never replayed against the server behind their back.
    """
    def __init__(
        self,
        base_url: str,
        user_agent: str = "ConfigMgr Messaging HTTP Sender",
        verify: bool = False,
        auth: Any = None,
        timeout: float = 60.0,
        pool_connections: int = DEFAULT_POOL_CONNECTIONS,
        pool_maxsize: int = DEFAULT_POOL_MAXSIZE,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.verify = verify
        if auth is not None:
            self.session.auth = auth

        adapter = HTTPAdapter(
            max_retries=0,
            pool_connections=pool_connections,
            pool_maxsize=pool_maxsize,
            pool_block=DEFAULT_POOL_BLOCK,
        )
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        self.session.headers.update({
            "User-Agent": user_agent,
        })

    def request(
        self,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> requests.Response:
        """Performs a request and maps failures onto TransportError."""
        url = f"{self.base_url}/{path.lstrip('/')}"

        try:
            response = self.session.request(
                method, url, timeout=timeout or self.timeout, headers=headers, **kwargs
            )
            response.raise_for_status()
            return response
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            body = e.response.text if e.response is not None else None
            logger.error(f"HTTP Error: {status} from {url}")
            raise TransportError(f"HTTP {status}", status_code=status, url=url, response_body=body) from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Network Error: {e}")
            raise TransportError(f"could not reach {url}", url=url) from e

    def close(self) -> None:
        self.session.close()
