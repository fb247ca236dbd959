"""WebSocket tunnel server for VLESS, VMess, Trojan and Shadowsocks streams."""

__version__ = "0.1.0"