"""Lightweight RPC over Unix domain and vsock sockets, with protobuf framing and a threaded client and server."""

__version__ = "0.1.0"