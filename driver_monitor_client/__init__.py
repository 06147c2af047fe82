"""
Driver Monitor Client - Streaming and alert client for a drowsiness analysis server.

This module runs on the driver's machine, captures camera frames, streams
them as JPEG over a WebSocket to the analysis server, renders the frames the
server relays back, and reacts to server alerts with escalating audio-visual
feedback and an acknowledgement handshake.
"""

__version__ = "1.0.0"
