"""Request pipeline shared by every connector.

Each request passes through, in order:
1. access logging (outermost, records the final status and latency)
2. CORS policy (may answer preflights or reject foreign origins)
3. route dispatch on (method, exact path)

The pipeline is immutable after construction and safe to call from many
connection threads at once.
"""

import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional, Union

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("server.access")

DEFAULT_CORS_METHODS = ("GET", "POST", "HEAD")


@dataclass
class Request:
    """Incoming HTTP request as seen by the pipeline."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: str = ""
    body: bytes = b""
    client: str = ""
    connector: str = ""

    def __post_init__(self):
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in dict(self.headers).items()}

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass
class Response:
    """Outgoing HTTP response."""

    status: int = 200
    body: bytes = b""
    headers: dict = field(default_factory=dict)

    @classmethod
    def text(cls, text: str, status: int = 200) -> "Response":
        return cls(
            status=status,
            body=text.encode("utf-8"),
            headers={"Content-Type": "text/plain; charset=UTF-8"},
        )


Handler = Callable[[Request], Response]
HeaderPredicate = Callable[[str], bool]


def allow_all_headers(name: str) -> bool:
    return True


def header_predicate(allowed: Union[str, Iterable[str], HeaderPredicate, None]) -> HeaderPredicate:
    """Build a header predicate from "*", a list of names, or a callable."""
    if allowed is None:
        return lambda name: False
    if callable(allowed):
        return allowed
    if allowed == "*":
        return allow_all_headers
    names = {name.lower() for name in allowed}
    return lambda name: name.lower() in names


@dataclass(frozen=True)
class CorsPolicy:
    """Cross-origin policy applied to every request."""

    allow_any_origin: bool = True
    allowed_origins: tuple = ()
    allowed_methods: tuple = DEFAULT_CORS_METHODS
    allowed_headers: HeaderPredicate = allow_all_headers
    max_age: Optional[int] = None
    allow_credentials: bool = False

    def origin_allowed(self, origin: str) -> bool:
        return self.allow_any_origin or origin in self.allowed_origins

    def allow_origin_headers(self, origin: str) -> dict:
        if self.allow_any_origin and not self.allow_credentials:
            return {"Access-Control-Allow-Origin": "*"}
        headers = {"Access-Control-Allow-Origin": origin, "Vary": "Origin"}
        if self.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return headers

    def preflight(self, request: Request, origin: str) -> Response:
        """Answer an OPTIONS request carrying an Origin header."""
        requested_method = (request.header("Access-Control-Request-Method") or "").upper()
        if requested_method and requested_method not in self.allowed_methods:
            logger.debug("CORS preflight rejected: method %s not allowed", requested_method)
            return Response(status=403)

        requested = request.header("Access-Control-Request-Headers") or ""
        names = [name.strip() for name in requested.split(",") if name.strip()]
        rejected = [name for name in names if not self.allowed_headers(name)]
        if rejected:
            logger.debug("CORS preflight rejected: headers %s not allowed", ", ".join(rejected))
            return Response(status=403)

        headers = self.allow_origin_headers(origin)
        headers["Access-Control-Allow-Methods"] = ", ".join(self.allowed_methods)
        if names:
            headers["Access-Control-Allow-Headers"] = ", ".join(names)
        if self.max_age is not None:
            headers["Access-Control-Max-Age"] = str(self.max_age)
        return Response(status=200, headers=headers)


class Pipeline:
    """Access logging, CORS and a static route table."""

    def __init__(
        self,
        routes: Mapping[tuple, Handler],
        cors: Optional[CorsPolicy] = None,
    ):
        self._routes = MappingProxyType(
            {(method.upper(), path): handler for (method, path), handler in routes.items()}
        )
        self.cors = cors

    @property
    def routes(self) -> Mapping[tuple, Handler]:
        return self._routes

    def handle(self, request: Request) -> Response:
        """Run request through the pipeline. Never raises."""
        start = time.monotonic()
        try:
            response = self._apply_cors(request)
        except Exception:
            logger.exception("Unhandled error for %s %s", request.method, request.path)
            response = Response.text("Internal Server Error", status=500)
        self._log_access(request, response, time.monotonic() - start)
        return response

    def _apply_cors(self, request: Request) -> Response:
        origin = request.header("Origin")
        if self.cors is None or origin is None:
            return self._dispatch(request)

        if not self.cors.origin_allowed(origin):
            logger.debug("CORS rejected origin %s", origin)
            return Response(status=403)

        if request.method == "OPTIONS":
            return self.cors.preflight(request, origin)

        response = self._dispatch(request)
        response.headers.update(self.cors.allow_origin_headers(origin))
        return response

    def _dispatch(self, request: Request) -> Response:
        handler = self._routes.get((request.method, request.path))
        if handler is not None:
            return handler(request)

        allowed = sorted(method for method, path in self._routes if path == request.path)
        if allowed:
            response = Response.text("Method Not Allowed", status=405)
            response.headers["Allow"] = ", ".join(allowed)
            return response
        return Response.text("Not Found", status=404)

    def _log_access(self, request: Request, response: Response, elapsed: float) -> None:
        log_access(
            request.connector, request.client, request.method, request.path, response.status, elapsed
        )


def log_access(
    connector: Optional[str],
    client: Optional[str],
    method: Optional[str],
    path: Optional[str],
    status: int,
    elapsed: float,
) -> None:
    """Write one access log line. Never raises."""
    try:
        access_logger.info(
            '%s %s "%s %s" %d %.1fms',
            connector or "-",
            client or "-",
            method or "-",
            path or "-",
            status,
            elapsed * 1000,
        )
    except Exception:  # noqa: BLE001
        pass


def hello_world(request: Request) -> Response:
    return Response.text("Hello World")


def default_pipeline(cors: Optional[CorsPolicy] = None) -> Pipeline:
    """Pipeline with the built-in routes and the given CORS policy."""
    return Pipeline(
        routes={("GET", "/"): hello_world},
        cors=cors if cors is not None else CorsPolicy(),
    )
