"""
Reference cloud endpoint -- the save/load contract over http.server.

Serves:
    POST <prefix>/save            store {data, timestamp} for the token's user
    GET  <prefix>/load?userId=ID  return the last stored record, or data=null
    OPTIONS on either             CORS preflight

Every request needs ``Authorization: Bearer <token>``. The token is
resolved to an identity by a ``TokenVerifier`` (normally the identity
provider's userinfo endpoint), and the asserted ``userId`` must match
that identity's id:

    save, userId != token subject  -> 403, nothing stored
    load, userId != token subject  -> 401

Records live in memory; this is a development and test endpoint, not
a database.

Usage:
    checksync serve --port 8787 --token devtoken=user-1:me@example.com
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from .auth import DEFAULT_USERINFO_URL, fetch_userinfo
from .models import StorageRecord, UserIdentity, utcnow

logger = logging.getLogger("checksync.server")

DEFAULT_PORT = 8787

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


# ---------------------------------------------------------------------------
# Storage and token verification
# ---------------------------------------------------------------------------

class RemoteRecordStore:
    """Thread-safe last-write-wins record per user id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, StorageRecord] = {}

    def save(self, user_id: str, record: StorageRecord) -> None:
        with self._lock:
            self._records[user_id] = record

    def load(self, user_id: str) -> Optional[StorageRecord]:
        with self._lock:
            return self._records.get(user_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class TokenVerifier(ABC):
    """Maps a bearer token to the identity it was issued for."""

    @abstractmethod
    def verify(self, access_token: str) -> Optional[UserIdentity]:
        """Return the token's identity, or None if the token is invalid."""


class UserinfoTokenVerifier(TokenVerifier):
    """Ask the identity provider's userinfo endpoint about each token."""

    def __init__(self, userinfo_url: str = DEFAULT_USERINFO_URL) -> None:
        self.userinfo_url = userinfo_url

    def verify(self, access_token: str) -> Optional[UserIdentity]:
        return fetch_userinfo(access_token, self.userinfo_url)


class StaticTokenVerifier(TokenVerifier):
    """Fixed token table, for local development and tests."""

    def __init__(self, tokens: dict[str, UserIdentity]) -> None:
        self.tokens = dict(tokens)

    def verify(self, access_token: str) -> Optional[UserIdentity]:
        return self.tokens.get(access_token)


# ---------------------------------------------------------------------------
# HTTP handler
# ---------------------------------------------------------------------------

def make_handler(store: RemoteRecordStore, verifier: TokenVerifier) -> type:
    """Build a request handler class bound to ``store`` and ``verifier``."""

    class RemoteStoreHandler(BaseHTTPRequestHandler):
        """HTTP handler for the save/load contract."""

        def do_OPTIONS(self):
            self._send_json(200, None, methods="GET, POST, OPTIONS")

        def do_GET(self):
            route = self._route()
            if route == "load":
                self._guarded(self._handle_load, "loading")
            elif route == "save":
                self._method_not_allowed("POST")
            else:
                self._send_json(404, {"error": "Not found"})

        def do_POST(self):
            route = self._route()
            if route == "save":
                self._guarded(self._handle_save, "saving")
            elif route == "load":
                self._method_not_allowed("GET")
            else:
                self._send_json(404, {"error": "Not found"})

        def do_PUT(self):
            self._method_not_allowed(self._allowed_for_route())

        def do_DELETE(self):
            self._method_not_allowed(self._allowed_for_route())

        # -- routing helpers ------------------------------------------------

        def _route(self) -> str:
            path = urlparse(self.path).path.rstrip("/")
            return path.rsplit("/", 1)[-1]

        def _allowed_for_route(self) -> str:
            return "POST" if self._route() == "save" else "GET"

        def _method_not_allowed(self, allowed: str) -> None:
            self._send_json(405, {
                "error": "Method not allowed",
                "message": f"This endpoint only accepts {allowed} requests",
            }, methods=f"{allowed}, OPTIONS")

        def _guarded(self, handler, verb: str) -> None:
            try:
                handler()
            except Exception as exc:
                logger.error("Endpoint error while %s: %s", verb, exc)
                self._send_json(500, {
                    "error": "Internal server error",
                    "message": f"An unexpected error occurred while {verb} data",
                })

        def _bearer_identity(self) -> tuple[Optional[str], Optional[UserIdentity]]:
            header = self.headers.get("Authorization", "")
            if not header.startswith("Bearer "):
                return None, None
            token = header[len("Bearer "):]
            return token, verifier.verify(token)

        # -- endpoints ------------------------------------------------------

        def _handle_save(self) -> None:
            token, identity = self._bearer_identity()
            if token is None:
                self._missing_auth()
                return
            if identity is None:
                self._send_json(401, {
                    "error": "Invalid token",
                    "message": "The provided access token is invalid or expired",
                })
                return

            length = int(self.headers.get("Content-Length") or 0)
            try:
                body = json.loads(self.rfile.read(length) or b"{}")
            except (json.JSONDecodeError, UnicodeDecodeError):
                self._send_json(400, {"error": "Malformed request body"})
                return
            if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
                self._send_json(400, {
                    "error": "Malformed request body",
                    "message": "Expected a JSON object with a data object",
                })
                return

            user_id = body.get("userId")
            if user_id != identity.id:
                self._send_json(403, {
                    "error": "User ID mismatch",
                    "message": "The user ID does not match the authenticated user",
                })
                return

            record = StorageRecord(data=body["data"])
            if body.get("timestamp"):
                try:
                    record = StorageRecord(data=body["data"], timestamp=body["timestamp"])
                except ValueError:
                    logger.debug("Ignoring unparseable client timestamp %r", body["timestamp"])
            store.save(user_id, record)
            logger.info(
                "Saved %d item(s) for %s (%s)",
                len(record.data), body.get("userEmail"), user_id,
            )
            self._send_json(200, {
                "success": True,
                "message": "Data saved successfully",
                "timestamp": utcnow().isoformat(),
                "userId": user_id,
            })

        def _handle_load(self) -> None:
            token, identity = self._bearer_identity()
            if token is None:
                self._missing_auth()
                return

            user_id = parse_qs(urlparse(self.path).query).get("userId", [""])[0]
            if not user_id:
                self._send_json(400, {
                    "error": "Missing userId parameter",
                    "message": "The userId query parameter is required",
                })
                return

            if identity is None or identity.id != user_id:
                self._send_json(401, {
                    "error": "Invalid token or user mismatch",
                    "message": "The provided token does not match the requested user",
                })
                return

            record = store.load(user_id)
            self._send_json(200, {
                "success": True,
                "data": record.data if record else None,
                "timestamp": record.timestamp.isoformat() if record else None,
                "message": None if record else "No saved data found",
                "userId": user_id,
            })

        # -- responses ------------------------------------------------------

        def _missing_auth(self) -> None:
            self._send_json(401, {
                "error": "Missing or invalid authorization header",
                "message": "Please provide a valid Bearer token",
            })

        def _send_json(
            self, status: int, data: Optional[dict[str, Any]], methods: str = "GET, POST, OPTIONS",
        ) -> None:
            body = b"" if data is None else json.dumps(data, default=str).encode("utf-8")
            self.send_response(status)
            for name, value in CORS_HEADERS.items():
                self.send_header(name, value)
            self.send_header("Access-Control-Allow-Methods", methods)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if body:
                self.wfile.write(body)

        def log_message(self, format, *args):
            logger.debug("Remote: %s", format % args)

    return RemoteStoreHandler


class RemoteServer:
    """Run the reference endpoint on a background thread.

    Args:
        verifier: Token verifier.
        store: Record store. A fresh in-memory one by default.
        host: Bind address.
        port: Bind port; 0 picks a free one.
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        store: Optional[RemoteRecordStore] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
    ) -> None:
        self.store = store or RemoteRecordStore()
        self.verifier = verifier
        self._httpd = ThreadingHTTPServer((host, port), make_handler(self.store, verifier))
        self._thread: Optional[threading.Thread] = None

    @property
    def url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def start(self) -> "RemoteServer":
        self._thread = threading.Thread(
            target=self._httpd.serve_forever,
            name="checksync-remote",
            daemon=True,
        )
        self._thread.start()
        logger.info("Remote endpoint listening on %s", self.url)
        return self

    def serve_forever(self) -> None:
        logger.info("Remote endpoint listening on %s", self.url)
        self._httpd.serve_forever()

    def stop(self) -> None:
        if self._thread is not None:
            self._httpd.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self._httpd.server_close()

    def __enter__(self) -> "RemoteServer":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()
