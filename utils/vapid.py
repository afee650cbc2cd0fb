# utils/vapid.py
from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid
from py_vapid.utils import b64urlencode


def generate_vapid_keys() -> tuple[str, str]:
    """
    New VAPID key pair as (private_key, public_key), both base64url.
    The public key is the uncompressed P-256 point browsers expect as
    `applicationServerKey`; the private key is the raw 32-byte scalar,
    which pywebpush accepts as `vapid_private_key`.
    """
    vapid = Vapid()
    vapid.generate_keys()

    raw_private = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    raw_public = vapid.public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return b64urlencode(raw_private), b64urlencode(raw_public)
