"""
Mock gateway and sidecar server for testing.

A small HTTP server that answers like the platform's gateways and a mesh
sidecar, so probe, mesh and scenario code can be exercised over real HTTP
without containers.
"""

import json
import socket
import threading
import time
import uuid
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import unquote, urlparse

NEWS_ITEMS = [
    {"news_id": "n-1", "title": "Clinic opens", "summary": None},
    {"news_id": "n-2", "title": "Annual report", "summary": "Highlights"},
    {"news_id": "n-3", "title": "Volunteer day", "summary": "Join us"},
]

KNOWN_APPS = {"content", "inquiries", "notifications", "content-api"}
KNOWN_STORES = {"statestore"}
KNOWN_PUBSUBS = {"pubsub"}


class MockMeshHandler(BaseHTTPRequestHandler):
    """HTTP request handler mimicking gateway routes and the sidecar API."""

    def do_GET(self):
        self._dispatch("GET")

    def do_POST(self):
        self._dispatch("POST")

    def do_PUT(self):
        self._dispatch("PUT")

    def do_DELETE(self):
        self._dispatch("DELETE")

    def _dispatch(self, method):
        length = int(self.headers.get("Content-Length", 0))
        raw_body = self.rfile.read(length) if length else b""
        path = urlparse(self.path).path
        self.server.requests.append(
            {"method": method, "path": path, "headers": dict(self.headers), "body": raw_body}
        )

        if path.startswith("/v1.0/"):
            self._sidecar(method, path[len("/v1.0/"):], raw_body)
        else:
            self._gateway(method, path, raw_body)

    # Gateway routes

    def _gateway(self, method, path, raw_body):
        correlation = {"X-Correlation-ID": str(uuid.uuid4())}

        if method == "GET" and path == "/api/news":
            self.send_json(200, {
                "data": NEWS_ITEMS,
                "count": len(NEWS_ITEMS),
                "pagination": {"page": 1, "page_size": 20, "total": len(NEWS_ITEMS)},
            }, correlation)
        elif method == "GET" and path.startswith("/api/news/"):
            news_id = path.rsplit("/", 1)[1]
            item = next((n for n in NEWS_ITEMS if n["news_id"] == news_id), None)
            if item is None:
                self.send_json(404, {"error": "news not found"}, correlation)
            else:
                self.send_json(200, {"data": item}, correlation)
        elif method == "GET" and path == "/api/events":
            self.send_json(200, {"data": []}, correlation)
        elif method == "GET" and path == "/api/no-correlation":
            self.send_json(200, {"data": []})
        elif method == "GET" and path == "/api/count-mismatch":
            self.send_json(200, {"data": [1, 2], "count": 3}, correlation)
        elif method == "GET" and path == "/api/not-json":
            self.send_raw(200, b"plain text", "text/plain")
        elif method == "GET" and path == "/api/error":
            self.send_json(500, {"error": "internal"}, correlation)
        elif method == "GET" and path == "/api/wrong-shape":
            self.send_json(200, {"data": [{"news_id": 7}], "pagination": {"page": 1}}, correlation)
        elif method == "POST" and path == "/api/inquiries/media":
            self.send_json(201, {"data": {"inquiry_id": "inq-1"}}, correlation)
        elif path.startswith("/admin/api/v1/"):
            if self.headers.get("Authorization", "").startswith("Bearer "):
                self.send_json(200, {"data": [], "pagination": {"page": 1}}, correlation)
            else:
                self.send_json(401, {"error": "unauthorized"}, correlation)
        elif path == "/health":
            self.send_json(200, {"status": "ok", "mock": True})
        else:
            self.send_json(404, {"error": "route not found"})

    # Sidecar API

    def _sidecar(self, method, rest, raw_body):
        parts = [unquote(p) for p in rest.split("/")]

        if parts == ["healthz"]:
            self.send_raw(204, b"", None)
        elif parts == ["metadata"] and method == "GET":
            self.send_json(200, {
                "id": "meshcheck",
                "components": [{"name": "statestore", "type": "state.redis", "version": "v1"}],
            })
        elif parts == ["components"] and method == "GET":
            self.send_json(200, [
                {"name": "statestore", "type": "state.redis", "version": "v1"},
                {"name": "pubsub", "type": "pubsub.redis", "version": "v1"},
            ])
        elif parts[0] == "invoke" and len(parts) >= 3 and parts[2] == "method":
            self._invoke(method, parts[1], "/" + "/".join(parts[3:]), raw_body)
        elif parts[0] == "state":
            self._state(method, parts[1:], raw_body)
        elif parts[0] == "publish" and len(parts) == 3 and method == "POST":
            if parts[1] in KNOWN_PUBSUBS:
                self.server.published.append((parts[1], parts[2], json.loads(raw_body or b"null")))
                self.send_raw(204, b"", None)
            else:
                self.send_json(404, {"errorCode": "ERR_PUBSUB_NOT_FOUND"})
        elif parts[0] == "secrets" and len(parts) == 3:
            self.send_json(200, {parts[2]: "s3cr3t"})
        else:
            self.send_json(404, {"errorCode": "ERR_NOT_FOUND"})

    def _invoke(self, method, app_id, path, raw_body):
        if app_id not in KNOWN_APPS:
            self.send_json(500, {"errorCode": "ERR_DIRECT_INVOKE", "message": f"app {app_id} not found"})
            return
        self._gateway(method, path, raw_body)

    def _state(self, method, parts, raw_body):
        if not parts or parts[0] not in KNOWN_STORES:
            self.send_json(400, {"errorCode": "ERR_STATE_STORE_NOT_FOUND"})
            return

        store = self.server.state
        if method == "POST" and len(parts) == 1:
            for entry in json.loads(raw_body):
                store[entry["key"]] = entry["value"]
            self.send_raw(204, b"", None)
        elif method == "GET" and len(parts) == 2:
            if parts[1] in store:
                self.send_json(200, store[parts[1]])
            else:
                self.send_raw(204, b"", None)
        elif method == "DELETE" and len(parts) == 2:
            store.pop(parts[1], None)
            self.send_raw(204, b"", None)
        else:
            self.send_json(405, {"errorCode": "ERR_METHOD"})

    def send_json(self, status_code, data, headers=None):
        self.send_raw(status_code, json.dumps(data).encode("utf-8"), "application/json", headers)

    def send_raw(self, status_code, body, content_type, headers=None):
        self.send_response(status_code)
        if content_type:
            self.send_header("Content-Type", content_type)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def log_message(self, format, *args):
        """Override to suppress default logging."""
        pass


class MockMeshHTTPServer(HTTPServer):
    def __init__(self, address):
        super().__init__(address, MockMeshHandler)
        self.requests = []
        self.state = {}
        self.published = []


class MockMeshServer:
    """Mock gateway plus sidecar on one port, served from a background thread."""

    def __init__(self, port=None, host="127.0.0.1"):
        self.port = port or self._find_free_port()
        self.host = host
        self.server = None
        self.thread = None
        self.running = False

    def start(self):
        """Start the mock server in a background thread."""
        if self.running:
            return

        self.server = MockMeshHTTPServer((self.host, self.port))
        self.thread = threading.Thread(target=self.server.serve_forever)
        self.thread.daemon = True
        self.thread.start()
        self.running = True

        time.sleep(0.1)

    def stop(self):
        """Stop the mock server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
        if self.thread:
            self.thread.join(timeout=1)
        self.running = False

    def get_url(self):
        """Get the base URL for the mock server."""
        return f"http://{self.host}:{self.port}"

    @property
    def requests(self):
        return self.server.requests

    @property
    def state(self):
        return self.server.state

    @property
    def published(self):
        return self.server.published

    def reset(self):
        self.server.requests.clear()
        self.server.state.clear()
        self.server.published.clear()

    def _find_free_port(self):
        """Find a free port for the mock server."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("", 0))
            s.listen(1)
            port = s.getsockname()[1]
        return port
