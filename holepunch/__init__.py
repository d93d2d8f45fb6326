"""UDP hole punching: rendezvous server, discovery client, KCP core, packet ciphers and framing."""

__version__ = "0.1.0"