"""
Dev server for bannerkit.

Combines HTTP serving of the build tree with WebSocket live reload and the
watch loop. When the watch loop finishes a rebuild or archive pass, the
broadcaster pushes a reload message to every connected browser.
"""

from __future__ import annotations

import argparse
import asyncio
import functools
import json
import threading
import time
import webbrowser
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Optional

import websockets
from watchdog.observers import Observer
from websockets.asyncio.server import serve as ws_serve, ServerConnection

from bannerkit.build.config import BannerConfig
from bannerkit.build.orchestrator import BuildOrchestrator
from bannerkit.build.phases import write_manifest_placeholder
from bannerkit.commands.watch import Debouncer, create_coordinator
from bannerkit.core.utils import log

# Collapses reloads from one rebuild plus its archive pass
RELOAD_DELAY_SECONDS = 0.05


# =============================================================================
# Injected Client Script
# =============================================================================

# The WebSocket port placeholder is replaced at runtime via str.replace().
LIVE_RELOAD_SCRIPT = """
<script>
(function() {
  var wsPort = __BANNERKIT_WS_PORT__;
  var ws = null;
  var reconnectDelay = 500;
  var maxReconnectDelay = 5000;

  function connect() {
    try {
      ws = new WebSocket('ws://' + location.hostname + ':' + wsPort + '/ws');
    } catch (e) {
      scheduleReconnect();
      return;
    }

    ws.onopen = function() {
      reconnectDelay = 500;
      console.log('[bannerkit] Live reload connected');
    };

    ws.onmessage = function(event) {
      var msg;
      try {
        msg = JSON.parse(event.data);
      } catch (e) {
        return;
      }
      if (msg.type === 'reload') {
        location.reload();
      }
    };

    ws.onclose = function() {
      ws = null;
      scheduleReconnect();
    };

    ws.onerror = function() {
      if (ws) ws.close();
    };
  }

  function scheduleReconnect() {
    setTimeout(function() {
      reconnectDelay = Math.min(reconnectDelay * 1.5, maxReconnectDelay);
      connect();
    }, reconnectDelay);
  }

  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', connect);
  } else {
    connect();
  }
})();
</script>
"""


def inject_reload_script(html: str, ws_port: int) -> str:
    """Insert the live reload client before ``</body>`` (or ``</html>``)."""
    script = LIVE_RELOAD_SCRIPT.replace("__BANNERKIT_WS_PORT__", str(ws_port))
    for closing in ("</body>", "</html>"):
        if closing in html:
            return html.replace(closing, script + "\n" + closing, 1)
    return html + script


# =============================================================================
# Script-Injecting HTTP Handler
# =============================================================================


class InjectingHandler(SimpleHTTPRequestHandler):
    """HTTP handler that injects the live reload script into HTML responses."""

    ws_port: int = 9001
    quiet: bool = True

    def log_message(self, format, *args):
        """Suppress default HTTP logging unless verbose."""
        if not self.quiet:
            super().log_message(format, *args)

    def end_headers(self):
        # Banner previews must never come from the browser cache
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def do_GET(self):
        """Serve files, injecting reload script into HTML."""
        f_path = Path(self.translate_path(self.path))

        if f_path.is_dir():
            index = f_path / "index.html"
            if index.exists():
                f_path = index

        if not (f_path.is_file() and f_path.suffix in (".html", ".htm")):
            super().do_GET()
            return

        try:
            content = f_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            self.send_error(HTTPStatus.NOT_FOUND, "File not found")
            return

        encoded = inject_reload_script(content, self.ws_port).encode("utf-8")
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)


# =============================================================================
# WebSocket Broadcast Server
# =============================================================================


class ReloadBroadcaster:
    """Manages WebSocket connections and broadcasts reload messages."""

    def __init__(self):
        self._clients: set[ServerConnection] = set()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    async def handler(self, websocket: ServerConnection) -> None:
        """Handle a new WebSocket connection."""
        with self._lock:
            self._clients.add(websocket)
        count = self.client_count
        log.debug(f"Browser connected ({count} client{'s' if count != 1 else ''})")

        try:
            async for _ in websocket:
                pass  # Clients never send anything
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            with self._lock:
                self._clients.discard(websocket)
            count = self.client_count
            log.debug(f"Browser disconnected ({count} client{'s' if count != 1 else ''})")

    def broadcast(self, message: dict) -> bool:
        """Send a message to all connected clients.

        Thread-safe: called from the watchdog and timer threads. Returns
        False (and does nothing) when no client is connected.
        """
        if self._loop is None:
            return False

        with self._lock:
            clients = set(self._clients)

        if not clients:
            return False

        data = json.dumps(message)

        async def _send_all():
            await asyncio.gather(*(self._safe_send(client, data) for client in clients))

        asyncio.run_coroutine_threadsafe(_send_all(), self._loop)
        return True

    @staticmethod
    async def _safe_send(client: ServerConnection, data: str) -> None:
        try:
            await client.send(data)
        except websockets.exceptions.ConnectionClosed:
            pass  # Removed by handler()

    def notify_reload(self) -> None:
        """Send a full page reload message."""
        if self.broadcast({"type": "reload"}):
            log.debug("[reload] Browsers notified")


async def _ws_process_request(connection, request):
    """Only accept WebSocket connections on /ws path."""
    if request.path != "/ws":
        return connection.respond(HTTPStatus.NOT_FOUND, "Not found\n")
    return None


def start_ws_server(broadcaster: ReloadBroadcaster, host: str, port: int) -> asyncio.AbstractEventLoop:
    """Run the websocket server on its own event loop thread."""
    loop = asyncio.new_event_loop()
    broadcaster.set_loop(loop)

    async def run_ws_server():
        async with ws_serve(
            broadcaster.handler,
            host,
            port,
            process_request=_ws_process_request,
        ):
            await asyncio.Future()  # Run forever

    def ws_thread_target():
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(run_ws_server())
        except RuntimeError:
            pass  # Loop stopped during shutdown

    threading.Thread(target=ws_thread_target, daemon=True).start()
    return loop


# =============================================================================
# Dev Server
# =============================================================================


def cmd_dev(config: BannerConfig, args: argparse.Namespace) -> int:
    """Execute the dev server command."""
    log.header(f"bannerkit dev: {config.project.name}")

    build_dir = config.build_dir
    auto_zip = config.features.enable_auto_zip
    if getattr(args, "full_build", False) or not config.features.skip_initial_build:
        orchestrator = BuildOrchestrator(config)
        if not orchestrator.build(clean_zips_first=auto_zip):
            log.warning("Initial build had errors; continuing with watch mode")
        elif auto_zip:
            orchestrator.archive_pass("initial build")
    else:
        log.dim("Skipping initial build (use --full-build to run one)")
    build_dir.mkdir(parents=True, exist_ok=True)
    write_manifest_placeholder(build_dir)

    host = config.server.host
    http_port = getattr(args, "port", None) or config.server.port
    ws_port = http_port + 1

    # --- Set up broadcaster ---
    broadcaster = ReloadBroadcaster()
    reload_debouncer = Debouncer(RELOAD_DELAY_SECONDS, lambda _reason: broadcaster.notify_reload())

    def notify_reload() -> None:
        reload_debouncer.trigger("reload")

    coordinator = create_coordinator(config, notify_reload=notify_reload)

    # --- Start HTTP server ---
    InjectingHandler.ws_port = ws_port
    InjectingHandler.quiet = not log.verbose
    handler_factory = functools.partial(InjectingHandler, directory=str(build_dir))
    try:
        httpd = ThreadingHTTPServer((host, http_port), handler_factory)
    except OSError as e:
        log.error(f"Could not bind http://{host}:{http_port}: {e}")
        return 1
    threading.Thread(target=httpd.serve_forever, daemon=True).start()
    url = f"http://{host}:{http_port}"
    log.success(f"HTTP server: {url}")

    # --- Start WebSocket server ---
    loop = start_ws_server(broadcaster, host, ws_port)
    log.success(f"WebSocket server: ws://{host}:{ws_port}/ws")

    # --- Set up file watcher ---
    observer = Observer()
    coordinator.start(observer)
    observer.start()

    if config.features.enable_auto_zip:
        log.info("Auto-zip enabled")
    log.info("")
    log.info("Watching for changes... (Ctrl+C to stop)")
    log.info("")

    if config.server.open:
        webbrowser.open(url)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("")
        log.header("Shutting down")

        coordinator.stop()
        reload_debouncer.cancel()
        observer.stop()
        observer.join(timeout=5)

        httpd.shutdown()
        loop.call_soon_threadsafe(loop.stop)

        log.info(f"Archive passes performed: {coordinator.zip_scheduler.pass_count}")
        log.success("Dev server stopped")

    return 0
