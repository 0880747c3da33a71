"""WebRTC session management: PeerConnection lifecycle and ICE config.

The browser sends its microphone and receives the instrumental:

  browser mic  ──► remote track ──► AudioContext device stream ──► recorders
  PlaybackController ──► MonitorTrack ──► browser speaker
"""

import asyncio
import logging

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from mixdown.errors import DeviceError
from mixdown.playback import MonitorTrack, PlaybackController

log = logging.getLogger("webrtc")


def ice_servers_to_rtc(servers: list) -> list:
    """Convert ICE server dicts to RTCIceServer objects."""
    result = []
    for s in servers:
        urls = s.get("urls", s.get("url", ""))
        if isinstance(urls, str):
            urls = [urls]
        result.append(RTCIceServer(
            urls=urls,
            username=s.get("username", ""),
            credential=s.get("credential", ""),
        ))
    return result


class Session:
    """One peer connection: monitor track out, microphone track in."""

    def __init__(self, playback: PlaybackController, ice_servers: list = None):
        rtc_servers = ice_servers_to_rtc(ice_servers or [])
        config = RTCConfiguration(iceServers=rtc_servers) if rtc_servers else RTCConfiguration()
        self._pc = RTCPeerConnection(configuration=config)
        self._monitor = MonitorTrack(playback)
        self._mic_track = asyncio.get_running_loop().create_future()

        @self._pc.on("connectionstatechange")
        async def on_conn_state():
            log.info("Connection state: %s", self._pc.connectionState)

        @self._pc.on("iceconnectionstatechange")
        async def on_ice_state():
            log.info("ICE connection state: %s", self._pc.iceConnectionState)

        @self._pc.on("track")
        def on_track(track):
            if track.kind != "audio":
                return
            log.info("Received remote audio track from browser mic")
            if not self._mic_track.done():
                self._mic_track.set_result(track)

    async def handle_offer(self, sdp: str) -> str:
        """Process client SDP offer, return SDP answer.

        aiortc bundles all ICE candidates into the answer SDP
        automatically (no trickle ICE support).
        """
        self._pc.addTrack(self._monitor)

        offer = RTCSessionDescription(sdp=sdp, type="offer")
        await self._pc.setRemoteDescription(offer)

        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)

        log.info("SDP answer created")
        return self._pc.localDescription.sdp

    async def microphone(self):
        """Capture-device factory for the AudioContext."""
        if not self._mic_track.done():
            raise DeviceError("Browser has not shared a microphone")
        track = self._mic_track.result()
        if track.readyState == "ended":
            raise DeviceError("Browser microphone track has ended")
        return track

    async def close(self):
        """Tear down the peer connection."""
        self._monitor.stop()
        if not self._mic_track.done():
            self._mic_track.cancel()
        await self._pc.close()
        log.info("Session closed")
