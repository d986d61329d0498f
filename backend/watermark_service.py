import uuid


def generate_watermark_code(account_id: str, device_id: str | None = None) -> str:
    """
    Visible overlay code for the player: UID-<account[:8]>-<device[:6]>.
    Readable off a screen recording and traceable back to the viewer.
    """
    device = (device_id or "UNK")[:6]
    return f"UID-{account_id[:8].upper()}-{device.upper()}"


def generate_tracking_code(watermark_code: str) -> str:
    """Unique per issued URL; the audit log maps it back to one playback grant."""
    return f"{watermark_code}-{str(uuid.uuid4())[:8]}"
