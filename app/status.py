from __future__ import annotations

from enum import Enum
from html import escape
from typing import Optional


class ConnectionState(str, Enum):
    NO_CODE = "no-code-yet"
    PENDING_CODE = "pending-code"
    CONNECTED = "connected"


class ConnectionStatus:
    """What the status page shows: nothing yet, a login QR, or connected."""

    def __init__(self) -> None:
        self.qr_data_url: Optional[str] = None
        self.connected = False

    @property
    def state(self) -> ConnectionState:
        if self.connected:
            return ConnectionState.CONNECTED
        if self.qr_data_url:
            return ConnectionState.PENDING_CODE
        return ConnectionState.NO_CODE

    def set_qr(self, data_url: str) -> None:
        self.qr_data_url = data_url
        self.connected = False

    def set_connected(self) -> None:
        self.qr_data_url = None
        self.connected = True

    def reset(self) -> None:
        self.qr_data_url = None
        self.connected = False


REFRESH_SECONDS = 3

_META_REFRESH = f'<meta http-equiv="refresh" content="{REFRESH_SECONDS}">'
_STYLE = (
    "<style>body{font-family:sans-serif;text-align:center;padding-top:50px;"
    "background-color:#f0f4f8;}</style>"
)


def render_status_page(status: ConnectionStatus) -> str:
    state = status.state
    if state is ConnectionState.CONNECTED:
        return (
            f"<html><head>{_STYLE}</head><body>"
            '<h1 style="color: #2c3e50;">⚕️ Bot Médico Online!</h1>'
            "<p>O sistema está conectado ao seu WhatsApp.</p>"
            "</body></html>"
        )
    if state is ConnectionState.PENDING_CODE:
        return (
            f"<html><head>{_META_REFRESH}{_STYLE}</head><body>"
            '<h1 style="color: #2c3e50;">Conecte o Bot Médico</h1>'
            "<p>Escaneie o QR Code abaixo:</p>"
            f'<img src="{escape(status.qr_data_url, quote=True)}" width="300" '
            'style="border-radius: 10px; box-shadow: 0 4px 8px rgba(0,0,0,0.1);"/>'
            "</body></html>"
        )
    return (
        f"<html><head>{_META_REFRESH}{_STYLE}</head><body>"
        "<h1>Aguardando QR Code...</h1>"
        "</body></html>"
    )
