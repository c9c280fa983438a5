from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from .config import HubRuntimeConfig
from .core import FileShareCore
from .envelope import encode
from .messages import MessageHelper
from .paths import RfsdHome
from .resources import ResourceManager
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .storage import RoomStorage
from .util import expand_path


class HubService:
    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("rfsd.hub")

        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)
        self.message_helper = MessageHelper(self)
        self.session_manager = SessionManager(self)
        self.resource_manager = ResourceManager(self)
        self.router = MessageRouter(self)

        self.storage = RoomStorage(config.uploads_dir or RfsdHome.from_env().uploads_dir)
        self.core = FileShareCore(
            self.storage,
            deliver=self.message_helper.deliver_event,
            username_max_chars=int(config.username_max_chars),
        )

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._cleanup_thread: threading.Thread | None = None
        self._stats_thread: threading.Thread | None = None

    def _fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if isinstance(h, (bytes, bytearray)):
            s = bytes(h).hex()
            return s if prefix <= 0 else s[: min(prefix, len(s))]
        return "-"

    def _fmt_link_id(self, link: RNS.Link) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def _start_thread(self, target, name: str) -> threading.Thread:
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        return t

    def start(self) -> None:
        self.stats_manager.set_start_time()

        # Rooms live only in memory, so files from a previous run are orphans.
        self.storage.clear_all()

        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = self._start_thread(self._announce_loop, "rfsd-announce")

        self._cleanup_thread = self._start_thread(self._cleanup_loop, "rfsd-upload-cleanup")

        if self.config.stats_log_interval_s and self.config.stats_log_interval_s > 0:
            self._stats_thread = self._start_thread(self._stats_loop, "rfsd-stats")

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s uploads_dir=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
            self.storage.root,
        )
        self.log.info(
            "Policy username_max_chars=%s max_upload_bytes=%s max_pending_uploads=%s",
            self.config.username_max_chars,
            self.config.max_upload_bytes,
            self.config.max_pending_uploads,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rfs", "v": 1, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _cleanup_loop(self) -> None:
        while not self._shutdown.wait(30.0):
            try:
                self.resource_manager.cleanup_all_expired_expectations()
            except Exception:
                self.log.exception("Upload expectation cleanup failed")

    def _stats_loop(self) -> None:
        interval = float(self.config.stats_log_interval_s)
        while not self._shutdown.wait(interval):
            self.log.info("%s", self.stats_manager.format_stats())

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        links = self.session_manager.clear_all()
        self.resource_manager.clear_all()
        self.core.shutdown()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Link teardown failed", exc_info=True)

        self.log.info("%s", self.stats_manager.format_stats())
        self.log.info("Hub stopped")

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        self.session_manager.on_link_established(link)
        self.resource_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        link.set_remote_identified_callback(
            lambda identified_link, ident: self.session_manager.on_remote_identified(
                identified_link, ident
            )
        )
        self.resource_manager.configure_link_callbacks(link)

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_close(self, link: RNS.Link) -> None:
        self.resource_manager.on_link_closed(link)
        peer, room_id, username = self.session_manager.on_link_closed(link)

        self.log.info(
            "Link closed peer=%s room=%s user=%r link_id=%s",
            self._fmt_hash(peer),
            room_id,
            username,
            self._fmt_link_id(link),
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Replies are collected first and sent once the handler is done; room
        # events go out from inside the core operation itself.
        outgoing: list[tuple[RNS.Link, dict]] = []
        try:
            self.router.route_packet(link, data, outgoing)
        except Exception:
            self.log.exception("Packet handling failed link_id=%s", self._fmt_link_id(link))

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d response(s) link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )
        self.message_helper.flush(outgoing)
