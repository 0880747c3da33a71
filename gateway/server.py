"""Gateway server: WebSocket control channel + published artifact downloads."""

import base64
import binascii
import json
import logging
import os
from pathlib import Path

from aiohttp import web
from dotenv import load_dotenv

load_dotenv()  # Must be before mixdown imports so Settings sees .env vars

from mixdown.artifacts import ArtifactRegistry
from mixdown.context import AudioContext
from mixdown.errors import DeviceError
from mixdown.session import StudioSession

log = logging.getLogger("gateway")

PORT = int(os.getenv("PORT", "8080"))
AUTH_TOKEN = os.getenv("AUTH_TOKEN", "devtoken")
ICE_SERVERS_JSON = os.getenv("ICE_SERVERS_JSON", "[]")

# Base64 uploads of whole songs go over the socket
MAX_MSG_SIZE = 64 * 1024 * 1024

REGISTRY_KEY = web.AppKey("artifacts", ArtifactRegistry)


def load_ice_servers() -> list:
    try:
        servers = json.loads(ICE_SERVERS_JSON)
    except json.JSONDecodeError:
        log.warning("ICE_SERVERS_JSON is not valid JSON, ignoring")
        return []
    return servers if isinstance(servers, list) else []


def decode_upload(msg: dict) -> bytes:
    """Payload of a load_* message, sent as base64 in "data"."""
    try:
        return base64.b64decode(msg.get("data", ""), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid upload data: {e}") from e


# ── Per-socket state ──────────────────────────────────────────

class Connection:
    """One browser tab: its peer connection and its studio session."""

    def __init__(self, ws: web.WebSocketResponse, registry: ArtifactRegistry):
        self.ws = ws
        self.rtc = None
        self.ice_servers = []
        self.authed = False
        self.studio = StudioSession(
            AudioContext(microphone=self._microphone),
            registry=registry,
            on_status=self._push_status,
        )

    async def _microphone(self):
        if self.rtc is None:
            raise DeviceError("No WebRTC session")
        return await self.rtc.microphone()

    async def _push_status(self, message: str):
        if not self.ws.closed:
            await self.ws.send_json({"type": "status", "message": message})

    async def send_state(self):
        await self.ws.send_json({"type": "state", **self.studio.snapshot()})

    async def error(self, message: str):
        await self.ws.send_json({"type": "error", "message": message})

    async def handle(self, msg: dict):
        msg_type = msg.get("type")
        log.debug("WS recv: %s", msg_type)

        if msg_type == "hello":
            if msg.get("token", "") != AUTH_TOKEN:
                await self.error("Bad token")
                await self.ws.close()
                return
            self.authed = True
            self.ice_servers = load_ice_servers()
            await self.ws.send_json({"type": "hello_ack", "ice_servers": self.ice_servers})
            await self.send_state()
            return

        if msg_type == "ping":
            await self.ws.send_json({"type": "pong"})
            return

        if not self.authed:
            await self.error("Say hello first")
            return

        if msg_type == "webrtc_offer":
            sdp = msg.get("sdp", "")
            if not sdp:
                await self.error("Missing SDP")
                return
            # Lazy import to avoid loading aiortc until needed
            from gateway.webrtc import Session
            if self.rtc is not None:
                await self.rtc.close()
            self.rtc = Session(self.studio.playback, ice_servers=self.ice_servers)
            answer_sdp = await self.rtc.handle_offer(sdp)
            await self.ws.send_json({"type": "webrtc_answer", "sdp": answer_sdp})

        elif msg_type == "load_instrumental":
            if msg.get("url"):
                await self.studio.load_instrumental_from_url(msg["url"])
            else:
                await self.studio.load_instrumental(decode_upload(msg), msg.get("name", "instrumental"))

        elif msg_type == "load_vocals":
            await self.studio.load_supplied_vocals(decode_upload(msg), msg.get("name", "vocals"))

        elif msg_type == "enable":
            await self.studio.enable_audio()

        elif msg_type == "play":
            self.studio.play()

        elif msg_type == "stop":
            self.studio.stop()

        elif msg_type == "set_gain":
            target = msg.get("target")
            if target == "instrumental":
                self.studio.set_instrumental_gain(msg.get("value"))
            elif target == "vocals":
                self.studio.set_vocals_gain(msg.get("value"))
            else:
                await self.error(f"Unknown gain target: {target}")
                return

        elif msg_type == "record_start":
            await self.studio.start_recording()

        elif msg_type == "record_stop":
            await self.studio.stop_recording()

        elif msg_type == "use_supplied_vocals":
            await self.studio.use_supplied_vocals()

        elif msg_type == "clear_supplied_vocals":
            self.studio.clear_supplied_vocals()

        elif msg_type == "remix":
            await self.studio.render_mix()

        else:
            await self.error(f"Unknown type: {msg_type}")
            return

        await self.send_state()

    async def close(self):
        await self.studio.close()
        if self.rtc is not None:
            await self.rtc.close()
            self.rtc = None


# ── HTTP routes ───────────────────────────────────────────────

async def handle_artifact(request: web.Request) -> web.Response:
    """Serve a published mix or take while its link is live."""
    artifact = request.app[REGISTRY_KEY].resolve(request.path)
    if artifact is None:
        raise web.HTTPNotFound()
    return web.Response(
        body=artifact.data,
        content_type=artifact.media_type.split(";")[0],
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


# ── WebSocket handler ─────────────────────────────────────────

async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(max_msg_size=MAX_MSG_SIZE)
    await ws.prepare(request)
    log.info("WebSocket connected from %s", request.remote)

    conn = Connection(ws, request.app[REGISTRY_KEY])
    try:
        async for raw in ws:
            if raw.type != web.WSMsgType.TEXT:
                continue
            try:
                msg = json.loads(raw.data)
            except json.JSONDecodeError:
                await conn.error("Invalid JSON")
                continue
            if not isinstance(msg, dict):
                await conn.error("Expected a JSON object")
                continue
            try:
                await conn.handle(msg)
            except ValueError as e:
                await conn.error(str(e))
    finally:
        await conn.close()
    log.info("WebSocket disconnected")
    return ws


# ── App setup ─────────────────────────────────────────────────

def create_app() -> web.Application:
    app = web.Application()
    app[REGISTRY_KEY] = ArtifactRegistry()
    app.router.add_get("/ws", handle_ws)
    app.router.add_get("/artifacts/{token}/{filename}", handle_artifact)
    return app


LOG_DIR = Path(__file__).resolve().parent.parent / "logs"


if __name__ == "__main__":
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / "server.log"

    fmt = logging.Formatter("%(asctime)s %(name)-12s %(levelname)-8s %(message)s")

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)

    filelog = logging.FileHandler(log_file)
    filelog.setLevel(logging.INFO)
    filelog.setFormatter(fmt)

    logging.basicConfig(level=logging.INFO, handlers=[console, filelog])

    # Silence noisy aiortc internals
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("aioice").setLevel(logging.WARNING)
    log.info("Logging to %s", log_file)

    log.info("Serving on http://0.0.0.0:%d", PORT)
    web.run_app(create_app(), host="0.0.0.0", port=PORT)
