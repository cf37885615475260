import logging
import os
from getpass import getpass
from typing import Optional

import qrcode

from core.lifecycle import ConnectionLifecycleManager
from core.models import Challenge, LifecycleOutcome

LOGGER = logging.getLogger(__name__)


def _print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def render_challenge(challenge: Challenge) -> None:
    """Show a login challenge on the terminal."""

    if challenge.qr:
        print("")
        print("Scan this QR code from Telegram > Settings > Devices > Link Desktop Device:")
        _print_qr(challenge.qr)
    if challenge.pairing_code:
        print(f"Pairing code: {challenge.pairing_code}")


def resolve_2fa_password(interactive: bool = False) -> Optional[str]:
    password = os.getenv("2FA")
    if password:
        return password
    if interactive:
        return getpass("2FA password (leave empty if none): ") or None
    return None


async def login(manager: ConnectionLifecycleManager) -> bool:
    """Run the lifecycle until the session opens once and its credentials are saved."""

    outcome = await manager.run(until_open=True)
    if outcome is LifecycleOutcome.OPENED:
        LOGGER.info("Session %s is logged in", manager.session_id)
        return True
    LOGGER.warning("Login for session %s ended with %s", manager.session_id, outcome.value)
    return False
