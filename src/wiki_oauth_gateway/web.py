"""HTTP surface of the gateway.

Provides the Starlette application with the login, callback,
verification and proxy endpoints, the allow-list CORS middleware and the
uvicorn runner.
"""

from __future__ import annotations

import html
import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from starlette.applications import Starlette
from starlette.datastructures import Headers, MutableHeaders
from starlette.middleware import Middleware
from starlette.responses import (
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)
from starlette.routing import Route

from wiki_oauth_gateway import __version__
from wiki_oauth_gateway.config import CallbackMode
from wiki_oauth_gateway.exceptions import (
    AuthenticationError,
    RequestFormatError,
    SessionNotAuthenticatedError,
    SessionNotFoundError,
    StorageError,
    TransportError,
    WikiOAuthError,
)
from wiki_oauth_gateway.logging_config import get_logger
from wiki_oauth_gateway.security import mask_sensitive_data, token_hint

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.types import ASGIApp, Lifespan, Message, Receive, Scope, Send

    from wiki_oauth_gateway.config import Config
    from wiki_oauth_gateway.oauth.flows import AuthFlow
    from wiki_oauth_gateway.oauth.session import WikiUser
    from wiki_oauth_gateway.oauth.token_store import TokenStore
    from wiki_oauth_gateway.proxy import ApiProxy

logger = get_logger(__name__)

CALLBACK_PATH = "/auth/callback"

ALLOWED_METHODS = "GET, POST, OPTIONS"
DEFAULT_ALLOWED_HEADERS = "Content-Type, Authorization"

POSTMESSAGE_TYPE = "wiki-oauth"

ENDPOINTS = {
    "login": "GET /auth/login",
    "callback": f"GET {CALLBACK_PATH}",
    "verifyCode": "POST /auth/verify-code",
    "verify": "POST /auth/verify",
    "logout": "POST /auth/logout",
    "proxy": "POST /proxy",
}


class AllowListCORSMiddleware:
    """ASGI middleware applying the gateway's CORS rule.

    The request ``Origin`` is echoed when it is allowed; otherwise the
    first configured origin is sent, which browsers will reject for any
    other caller. Preflight requests are answered directly with 200.
    """

    def __init__(
        self,
        app: ASGIApp,
        allowed_origins: list[str],
        allowed_origin_regex: str | None = None,
    ) -> None:
        self.app = app
        self.allowed_origins = list(allowed_origins)
        self.allowed_origin_regex = re.compile(allowed_origin_regex) if allowed_origin_regex else None

    def is_allowed(self, origin: str | None) -> bool:
        if not origin:
            return False
        if origin in self.allowed_origins:
            return True
        return bool(self.allowed_origin_regex and self.allowed_origin_regex.fullmatch(origin))

    def allow_origin_for(self, origin: str | None) -> str | None:
        """Pick the value of ``Access-Control-Allow-Origin`` for a request."""
        if origin and self.is_allowed(origin):
            return origin
        return self.allowed_origins[0] if self.allowed_origins else None

    def cors_headers(self, request_headers: Headers) -> dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": (
                request_headers.get("access-control-request-headers") or DEFAULT_ALLOWED_HEADERS
            ),
            "Access-Control-Allow-Credentials": "true",
            "Vary": "Origin",
        }
        allow_origin = self.allow_origin_for(request_headers.get("origin"))
        if allow_origin:
            headers["Access-Control-Allow-Origin"] = allow_origin
        return headers

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_headers = Headers(scope=scope)
        cors_headers = self.cors_headers(request_headers)

        if scope["method"] == "OPTIONS":
            response = PlainTextResponse("OK", status_code=200, headers=cors_headers)
            await response(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                headers = MutableHeaders(scope=message)
                for key, value in cors_headers.items():
                    if key == "Vary":
                        headers.add_vary_header(value)
                    else:
                        headers[key] = value
            await send(message)

        await self.app(scope, receive, send_with_cors)


def error_status(error: Exception) -> int:
    """Map an exception onto the HTTP status reported to the caller."""
    if isinstance(error, (SessionNotFoundError, SessionNotAuthenticatedError, AuthenticationError)):
        return 401
    if isinstance(error, RequestFormatError):
        return 400
    if isinstance(error, TransportError):
        return 502
    if isinstance(error, StorageError):
        return 503
    return 500


def public_message(error: Exception) -> str:
    """Short human-readable reason; provider bodies and tracebacks stay in the log."""
    if isinstance(error, WikiOAuthError):
        return error.message
    return "Internal server error"


def error_response(error: Exception) -> JSONResponse:
    status = error_status(error)
    if status == 500:
        logger.exception("Unhandled error: %s", error)
    else:
        logger.warning("Request failed (%d): %s", status, error)
    return JSONResponse({"success": False, "error": public_message(error)}, status_code=status)


def user_payload(user: WikiUser) -> dict[str, Any]:
    return user.to_dict()


def _script_json(value: Any) -> str:
    """Serialize a value for embedding inside a ``<script>`` element."""
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


def render_popup_page(message_payload: dict[str, Any], target_origin: str, text: str) -> str:
    """Page that reports the login result to the opener window and closes."""
    title = "Login successful" if message_payload.get("success") else "Login failed"
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
<p>{html.escape(text)}</p>
<script>
(function () {{
  var payload = {_script_json(message_payload)};
  var targetOrigin = {_script_json(target_origin)};
  if (window.opener) {{
    window.opener.postMessage(payload, targetOrigin);
  }}
  setTimeout(function () {{ window.close(); }}, 500);
}})();
</script>
</body>
</html>
"""


def render_error_page(text: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Login failed</title></head>
<body>
<h1>Login failed</h1>
<p>{html.escape(text)}</p>
<p>Close this window and try again.</p>
</body>
</html>
"""


def derive_callback_url(request: Request, configured: str | None = None) -> str:
    """Absolute callback URL, honouring proxy headers when none is configured."""
    if configured:
        return configured
    proto = request.headers.get("x-forwarded-proto", "").split(",")[0].strip()
    host = request.headers.get("x-forwarded-host", "").split(",")[0].strip()
    scheme = proto or request.url.scheme
    netloc = host or request.headers.get("host") or request.url.netloc
    return f"{scheme}://{netloc}{CALLBACK_PATH}"


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise RequestFormatError("Invalid JSON body") from e
    if not isinstance(body, dict):
        raise RequestFormatError("JSON body must be an object")
    return body


def _require(body: dict[str, Any], field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value.strip():
        raise RequestFormatError(f"Missing {field}")
    return value.strip()


def create_web_app(
    config: Config,
    auth_flow: AuthFlow,
    proxy: ApiProxy,
    token_store: TokenStore | None = None,
    lifespan: Lifespan[Starlette] | None = None,
) -> Starlette:
    """Create the Starlette application.

    Args:
        config: Application configuration
        auth_flow: Login flow controller
        proxy: Authenticated API proxy
        token_store: Session storage, reported by the debug endpoint
        lifespan: Startup and shutdown hook

    Returns:
        Configured Starlette application
    """
    routes: list[Route] = []

    async def status(request: Request) -> JSONResponse:
        """Service status document."""
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "version": __version__,
            "environment": config.environment.value,
            "callbackMode": config.callback_mode.value,
            "hasConsumerKey": config.has_consumer_credentials,
            "endpoints": ENDPOINTS,
        })

    async def login(request: Request) -> JSONResponse:
        """Begin an OAuth login."""
        try:
            callback_url = None
            if not config.is_out_of_band:
                callback_url = derive_callback_url(request, config.callback_url)
            start = await auth_flow.begin(callback_url)
        except Exception as e:
            return error_response(e)
        return JSONResponse({"success": True, **start.to_dict()})

    def _frontend_redirect(params: dict[str, str]) -> RedirectResponse:
        base = config.frontend_url or "/"
        separator = "&" if "?" in base else "?"
        return RedirectResponse(f"{base}{separator}{urlencode(params)}", status_code=302)

    def _callback_failure(text: str, status_code: int) -> Response:
        if config.callback_mode == CallbackMode.REDIRECT and config.frontend_url:
            return _frontend_redirect({"oauth_error": text})
        if config.callback_mode == CallbackMode.POPUP:
            payload = {"type": POSTMESSAGE_TYPE, "success": False, "error": text}
            page = render_popup_page(payload, config.frontend_origin or "*", text)
            return HTMLResponse(page, status_code=status_code)
        return HTMLResponse(render_error_page(text), status_code=status_code)

    async def callback(request: Request) -> Response:
        """Provider redirect after the user authorized the request token."""
        oauth_token = request.query_params.get("oauth_token")
        oauth_verifier = request.query_params.get("oauth_verifier")

        if not oauth_token or not oauth_verifier:
            logger.warning("OAuth callback without token or verifier")
            return _callback_failure("Missing oauth_token or oauth_verifier", 400)

        try:
            session_id, user = await auth_flow.complete(
                oauth_verifier, request_token_key=oauth_token
            )
        except Exception as e:
            status_code = error_status(e)
            if status_code == 500:
                logger.exception("OAuth callback failed: %s", e)
            else:
                logger.warning("OAuth callback failed (%d): %s", status_code, e)
            return _callback_failure(public_message(e), status_code)

        if config.callback_mode == CallbackMode.REDIRECT and config.frontend_url:
            return _frontend_redirect({"oauth_success": "true", "session": session_id})

        payload = {"type": POSTMESSAGE_TYPE, "success": True, "sessionId": session_id}
        page = render_popup_page(
            payload,
            config.frontend_origin or "*",
            f"Logged in as {user.name}. This window will close automatically.",
        )
        return HTMLResponse(page)

    async def verify_code(request: Request) -> JSONResponse:
        """Complete an out-of-band login with the copied verification code."""
        try:
            body = await _json_body(request)
            session_id = _require(body, "sessionId")
            code = _require(body, "verificationCode")
            session_id, user = await auth_flow.complete(code, session_id=session_id)
        except Exception as e:
            return error_response(e)
        return JSONResponse({"success": True, "user": user_payload(user), "sessionId": session_id})

    async def verify(request: Request) -> JSONResponse:
        """Check that a session is authenticated."""
        try:
            body = await _json_body(request)
            user = await auth_flow.verify(_require(body, "sessionId"))
        except Exception as e:
            return error_response(e)
        return JSONResponse({"success": True, "user": user_payload(user)})

    async def logout(request: Request) -> JSONResponse:
        """Forget a session."""
        try:
            body = await _json_body(request)
            await auth_flow.logout(_require(body, "sessionId"))
        except Exception as e:
            return error_response(e)
        return JSONResponse({"success": True})

    async def proxy_call(request: Request) -> JSONResponse:
        """Forward an API action for an authenticated session."""
        try:
            body = await _json_body(request)
            session_id = _require(body, "sessionId")
            action = _require(body, "action")
            params = body.get("params") or {}
            if not isinstance(params, dict):
                raise RequestFormatError("params must be an object")
            data = await proxy.call(session_id, action, params)
        except Exception as e:
            return error_response(e)
        return JSONResponse({"success": True, "data": data})

    routes.append(Route("/", status, methods=["GET"]))
    routes.append(Route("/health", status, methods=["GET"]))
    routes.append(Route("/auth/login", login, methods=["GET"]))
    routes.append(Route(CALLBACK_PATH, callback, methods=["GET"]))
    routes.append(Route("/auth/verify-code", verify_code, methods=["POST"]))
    routes.append(Route("/auth/verify", verify, methods=["POST"]))
    routes.append(Route("/auth/logout", logout, methods=["POST"]))
    routes.append(Route("/proxy", proxy_call, methods=["POST"]))

    if config.enable_debug_endpoint:

        async def debug(request: Request) -> JSONResponse:
            """Redacted configuration diagnostics."""
            settings = mask_sensitive_data(config.model_dump(mode="json"))
            return JSONResponse({
                "config": settings,
                "consumerKey": token_hint(config.consumer_key),
                "hasConsumerSecret": config.consumer_secret is not None,
                "callbackUrl": derive_callback_url(request, config.callback_url),
                "tokenStore": type(token_store).__name__ if token_store else None,
                "corsOrigins": config.cors_origins,
            })

        routes.append(Route("/debug", debug, methods=["GET"]))
        logger.warning("Debug endpoint enabled at /debug")

    middleware = [
        Middleware(
            AllowListCORSMiddleware,
            allowed_origins=config.cors_origins,
            allowed_origin_regex=config.allowed_origin_regex,
        )
    ]

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


async def run_server(app: Starlette, host: str, port: int, log_level: str = "info") -> None:
    """Run the gateway using uvicorn.

    Args:
        app: Starlette ASGI application
        host: Host to bind to
        port: Port to bind to
        log_level: uvicorn log level
    """
    import uvicorn

    logger.info("Starting gateway on %s:%d", host, port)

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level=log_level,
    )
    server = uvicorn.Server(config)
    await server.serve()
