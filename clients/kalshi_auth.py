"""Kalshi per-request RSA-PSS signing.

Kalshi authenticates every call with three headers:
- KALSHI-ACCESS-KEY: the API key id
- KALSHI-ACCESS-TIMESTAMP: current time in milliseconds
- KALSHI-ACCESS-SIGNATURE: base64 RSA-PSS (SHA-256) over timestamp + METHOD + path

The signature is bound to the timestamp, so headers are computed fresh
for every request and never cached.
"""

from __future__ import annotations

import base64
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding


def load_private_key(pem: str = "", key_path: str = "") -> Any:
    """Load the RSA private key from inline PEM text or a PEM file."""
    if pem:
        key_data = pem.encode("utf-8")
    else:
        path = Path(key_path)
        if not path.exists():
            raise FileNotFoundError(f"Kalshi private key not found: {path}")
        key_data = path.read_bytes()
    return serialization.load_pem_private_key(key_data, password=None)


def sign_message(private_key: Any, message: str) -> str:
    signature = private_key.sign(
        message.encode("utf-8"),
        padding.PSS(
            mgf=padding.MGF1(hashes.SHA256()),
            salt_length=padding.PSS.DIGEST_LENGTH,
        ),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("utf-8")


def sign_request(method: str, path: str, api_key_id: str, private_key: Any,
                 clock: Optional[Callable[[], float]] = None) -> Dict[str, str]:
    """Build the Kalshi auth headers for one request.

    ``path`` is the full URL path without the query string, e.g.
    ``/trade-api/v2/markets``.
    """
    now = (clock or time.time)()
    timestamp = str(int(now * 1000))
    signed_path = path.split("?", 1)[0]
    return {
        "KALSHI-ACCESS-KEY": api_key_id,
        "KALSHI-ACCESS-TIMESTAMP": timestamp,
        "KALSHI-ACCESS-SIGNATURE": sign_message(
            private_key, f"{timestamp}{method.upper()}{signed_path}",
        ),
    }
