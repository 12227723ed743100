"""Service delivering the relay status website."""

from __future__ import annotations

import gzip
import logging
import threading
import time
from dataclasses import dataclass, fields
from typing import Any, Callable, Iterable
from urllib.parse import parse_qs
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import jinja2

from mevrelay.html import StatusHTMLData, minify_html, parse_index_template

__all__ = [
    "ServerAlreadyStartedError",
    "EthNetworkDetails",
    "WebserverOpts",
    "Webserver",
]

STATS_FIELD_LATEST_SLOT = "latest_slot"
STATS_FIELD_VALIDATORS_TOTAL = "validators_total"
RECENT_PAYLOADS_LIMIT = 30
UPDATE_INTERVAL_SECONDS = 10.0
GZIP_MIN_SIZE = 1400

_ICON_DESC = (
    ' <svg style="width:12px;" xmlns="http://www.w3.org/2000/svg" fill="none" '
    'viewBox="0 0 24 24" stroke-width="1.5" stroke="currentColor" class="w-6 h-6">'
    '<path stroke-linecap="round" stroke-linejoin="round" '
    'd="M19.5 13.5L12 21m0 0l-7.5-7.5M12 21V3" /></svg>'
)
_ICON_ASC = (
    ' <svg style="width:12px;" xmlns="http://www.w3.org/2000/svg" fill="none" '
    'viewBox="0 0 24 24" stroke-width="1.5" stroke="currentColor" class="w-6 h-6">'
    '<path stroke-linecap="round" stroke-linejoin="round" '
    'd="M4.5 10.5L12 3m0 0l7.5 7.5M12 3v18" /></svg>'
)


class ServerAlreadyStartedError(RuntimeError):
    """Raised when the web server is started a second time."""

    def __init__(self, message: str = "server was already started") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class EthNetworkDetails:
    """Network parameters shown on the status page."""

    name: str
    bellatrix_fork_version_hex: str = ""
    capella_fork_version_hex: str = ""
    genesis_fork_version_hex: str = ""
    genesis_validators_root_hex: str = ""
    domain_builder: bytes = b""
    domain_beacon_proposer_bellatrix: bytes = b""


@dataclass
class WebserverOpts:
    """Settings and dependencies of the website.

    ``db`` offers ``num_registered_validators()``,
    ``get_recent_delivered_payloads(limit, order_by_value)`` and
    ``get_num_delivered_payloads()``; ``redis`` offers ``get_stats(field)``,
    which returns ``None`` for a missing field. ``index_template`` is the
    page template source.
    """

    listen_address: str
    relay_pubkey_hex: str
    network_details: EthNetworkDetails
    redis: Any
    db: Any
    index_template: str
    log: logging.Logger | None = None

    show_config_details: bool = False
    link_beaconchain: str = ""
    link_etherscan: str = ""
    link_data_api: str = ""
    relay_url: str = ""


def _parse_uint(text: Any) -> int:
    value = "" if text is None else str(text)
    return int(value) if value.isdigit() and value.isascii() else 0


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    return host.strip("[]"), int(port) if port else 80


class _Handler(WSGIRequestHandler):
    timeout = 3

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        pass


class Webserver:
    """Serves the status page and refreshes it in the background."""

    def __init__(self, opts: WebserverOpts) -> None:
        self.opts = opts
        self.log = opts.log or logging.getLogger(__name__)
        self.redis = opts.redis
        self.db = opts.db
        self.index_template = parse_index_template(opts.index_template)
        self.srv: WSGIServer | None = None

        details = opts.network_details
        self.status_html_data = StatusHTMLData(
            network=details.name,
            relay_pubkey=opts.relay_pubkey_hex,
            bellatrix_fork_version=details.bellatrix_fork_version_hex,
            capella_fork_version=details.capella_fork_version_hex,
            genesis_fork_version=details.genesis_fork_version_hex,
            genesis_validators_root=details.genesis_validators_root_hex,
            builder_signing_domain="0x" + bytes(details.domain_builder).hex(),
            beacon_proposer_signing_domain="0x" + bytes(details.domain_beacon_proposer_bellatrix).hex(),
            show_config_details=opts.show_config_details,
            link_beaconchain=opts.link_beaconchain,
            link_etherscan=opts.link_etherscan,
            link_data_api=opts.link_data_api,
            relay_url=opts.relay_url,
        )

        self._pages = (b"", b"", b"")
        self._pages_lock = threading.Lock()
        self._started = threading.Lock()
        self._server_lock = threading.Lock()
        self._stop = threading.Event()

    def _fetch(self, what: str, default: Any, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            self.log.exception("error getting %s", what)
            return default

    def _render(self, what: str) -> bytes:
        data = self.status_html_data
        context = {f.name: getattr(data, f.name) for f in fields(data)}
        try:
            rendered = self.index_template.render(context)
        except jinja2.TemplateError:
            self.log.exception("error rendering template%s", what)
            rendered = ""
        return minify_html(rendered).encode("utf-8")

    def update_html(self) -> None:
        """Refresh the page data and re-render the three page variants."""
        num_registered = self._fetch("number of registered validators", 0, self.db.num_registered_validators)
        payloads = self._fetch(
            "recent payloads", [], self.db.get_recent_delivered_payloads,
            limit=RECENT_PAYLOADS_LIMIT, order_by_value=0,
        ) or []
        payloads_desc = self._fetch(
            "recent payloads", [], self.db.get_recent_delivered_payloads,
            limit=RECENT_PAYLOADS_LIMIT, order_by_value=-1,
        ) or []
        payloads_asc = self._fetch(
            "recent payloads", [], self.db.get_recent_delivered_payloads,
            limit=RECENT_PAYLOADS_LIMIT, order_by_value=1,
        ) or []
        num_delivered = self._fetch("number of delivered payloads", 0, self.db.get_num_delivered_payloads)

        latest_slot = _parse_uint(self._fetch("latest slot", None, self.redis.get_stats, STATS_FIELD_LATEST_SLOT))
        if payloads and payloads[0].slot > latest_slot:
            latest_slot = payloads[0].slot
        validators_total = _parse_uint(
            self._fetch("latest stats: validators_total", None, self.redis.get_stats, STATS_FIELD_VALIDATORS_TOTAL)
        )

        data = self.status_html_data
        data.validators_total = validators_total
        data.validators_registered = num_registered or 0
        data.num_payloads_delivered = num_delivered or 0
        data.head_slot = latest_slot

        data.payloads = list(payloads)
        data.value_link = "/?order_by=-value"
        data.value_order_icon = ""
        html_default = self._render("")

        data.payloads = list(payloads_desc)
        data.value_link = "/?order_by=value"
        data.value_order_icon = _ICON_DESC
        html_desc = self._render(" (by value)")

        data.payloads = list(payloads_asc)
        data.value_link = "/"
        data.value_order_icon = _ICON_ASC
        html_asc = self._render(" (by -value)")

        with self._pages_lock:
            self._pages = (html_default, html_desc, html_asc)

    def handle_root(self, order_by: str | None) -> bytes:
        """Return the page for the requested ordering."""
        with self._pages_lock:
            default, by_value_desc, by_value_asc = self._pages
        if order_by == "-value":
            return by_value_desc
        if order_by == "value":
            return by_value_asc
        return default

    def wsgi_app(self, environ: dict, start_response: Callable[..., Any]) -> Iterable[bytes]:
        """WSGI entry point: routing, gzip compression and request logging."""
        started = time.monotonic()
        method = environ.get("REQUEST_METHOD", "GET").upper()
        path = environ.get("PATH_INFO", "") or "/"
        headers: list[tuple[str, str]] = []

        if path != "/":
            status, body = "404 Not Found", b"404 page not found\n"
            headers.append(("Content-Type", "text/plain; charset=utf-8"))
        elif method != "GET":
            status, body = "405 Method Not Allowed", b""
        else:
            query = parse_qs(environ.get("QUERY_STRING", ""))
            order_by = query.get("order_by", [None])[0]
            status, body = "200 OK", self.handle_root(order_by)
            headers.append(("Content-Type", "text/html; charset=utf-8"))

        headers.append(("Vary", "Accept-Encoding"))
        accepts_gzip = "gzip" in environ.get("HTTP_ACCEPT_ENCODING", "").lower()
        if accepts_gzip and len(body) >= GZIP_MIN_SIZE:
            body = gzip.compress(body)
            headers.append(("Content-Encoding", "gzip"))
        headers.append(("Content-Length", str(len(body))))

        start_response(status, headers)
        self.log.info(
            "http: %s %s %s (%.3f ms)", method, path, status.split()[0], (time.monotonic() - started) * 1000
        )
        return [body]

    def _update_loop(self) -> None:
        while True:
            try:
                self.update_html()
            except Exception:
                self.log.exception("error updating status page")
            if self._stop.wait(UPDATE_INTERVAL_SECONDS):
                return

    def start_server(self) -> None:
        """Serve the website until ``stop`` is called; blocks."""
        if not self._started.acquire(blocking=False):
            raise ServerAlreadyStartedError()
        self._stop.clear()
        threading.Thread(target=self._update_loop, daemon=True).start()

        host, port = _split_address(self.opts.listen_address)
        server = make_server(host, port, self.wsgi_app, handler_class=_Handler)
        with self._server_lock:
            if self._stop.is_set():
                server.server_close()
                return
            self.srv = server
        try:
            server.serve_forever(poll_interval=0.1)
        finally:
            server.server_close()
            self._stop.set()

    def stop(self) -> None:
        """Stop serving and stop the background refresh."""
        with self._server_lock:
            self._stop.set()
            server = self.srv
        if server is not None:
            server.shutdown()