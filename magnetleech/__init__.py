"""BitTorrent metainfo, magnet links, encrypted peer handshakes and metadata leeching."""

__version__ = "0.1.0"

__all__ = [
    "btconn",
    "codec",
    "credentials",
    "extract",
    "filetree",
    "info",
    "leech",
    "magnet",
    "metainfo",
    "mse",
    "peers",
    "sink",
]