import json
import logging

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import QR_MODULE_PIXELS
from backend.services.sessions import Proof

logger = logging.getLogger(__name__)

QUIET_ZONE_MODULES = 4


def proof_to_text(proof: Proof) -> str:
    return json.dumps(
        {"sessionId": proof["sessionId"], "courseId": proof["courseId"], "token": proof["token"]},
        separators=(",", ":"),
    )


def render_qr(text: str, module_pixels: int = QR_MODULE_PIXELS) -> np.ndarray:
    encoder = cv2.QRCodeEncoder.create()
    matrix = encoder.encode(text)
    if matrix is None or matrix.size == 0:
        raise ValueError("QR encoder returned an empty image.")

    # Encoder output is one pixel per module.
    scaled = cv2.resize(
        matrix,
        None,
        fx=module_pixels,
        fy=module_pixels,
        interpolation=cv2.INTER_NEAREST,
    )
    border = QUIET_ZONE_MODULES * module_pixels
    return cv2.copyMakeBorder(scaled, border, border, border, border, cv2.BORDER_CONSTANT, value=255)


def encode_proof_png(proof: Proof, module_pixels: int = QR_MODULE_PIXELS) -> bytes:
    image = render_qr(proof_to_text(proof), module_pixels)
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise ValueError("PNG encoding failed.")
    return buf.tobytes()


def decode_qr_image(data: bytes) -> str | None:
    """
    Returns:
      decoded text, or None when the bytes are not an image or hold no QR code
    """
    if not data:
        return None

    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        return None

    try:
        text, _points, _ = cv2.QRCodeDetector().detectAndDecode(frame)
    except cv2.error as e:
        logger.info("QR decode failed: %s", e)
        return None
    return text or None
