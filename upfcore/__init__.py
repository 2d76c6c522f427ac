"""User plane function core: PFCP rules, packet matching, sessions, buffering and GTP-U echo."""

__version__ = "0.1.0"