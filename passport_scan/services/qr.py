import io

import qrcode
from PIL import Image, ImageDraw

from .encoder import BitSequence, RING_LAYOUT, rings, segment_angles

CANVAS = 300
CENTER = CANVAS // 2
# (inner radius, outer radius, half-width in degrees) per data ring
RING_GEOMETRY = ((65, 75, 18), (85, 95, 9), (105, 115, 6))


def make_qr_bytes(text: str) -> bytes:
    """Return standard QR PNG bytes for a transport-encoded scan token."""
    img = qrcode.make(text)
    buf = io.BytesIO()
    img.save(buf, format='PNG')
    return buf.getvalue()


def ring_segments(bits: BitSequence) -> list[dict]:
    """Describe every data segment so any renderer can draw the same pattern."""
    segments = []
    for ring_index, (ring_bits, (count, start), (r_in, r_out, span)) in enumerate(
            zip(rings(bits), RING_LAYOUT, RING_GEOMETRY)):
        for i, angle in enumerate(segment_angles(count)):
            segments.append({
                'ring': ring_index,
                'segment': i,
                'bit_index': start + i,
                'angle': angle,
                'start_angle': angle - span,
                'end_angle': angle + span,
                'inner_radius': r_in,
                'outer_radius': r_out,
                'filled': ring_bits[i] == '1',
            })
    return segments


def render_rings(bits: BitSequence) -> Image.Image:
    img = Image.new('RGB', (CANVAS, CANVAS), color=(255, 255, 255))
    draw = ImageDraw.Draw(img)
    for seg in ring_segments(bits):
        r = seg['outer_radius']
        box = (CENTER - r, CENTER - r, CENTER + r, CENTER + r)
        width = seg['outer_radius'] - seg['inner_radius']
        # PIL angles run clockwise from 3 o'clock, same as the detector
        fill = (0, 0, 0) if seg['filled'] else (255, 255, 255)
        draw.arc(box, seg['start_angle'], seg['end_angle'], fill=fill, width=width)
    # centre logo area
    draw.ellipse((CENTER - 55, CENTER - 55, CENTER + 55, CENTER + 55), outline=(0, 0, 0), width=4)
    draw.ellipse((CENTER - 120, CENTER - 120, CENTER + 120, CENTER + 120), outline=(0, 0, 0), width=3)
    return img


def render_rings_png(bits: BitSequence) -> bytes:
    buf = io.BytesIO()
    render_rings(bits).save(buf, format='PNG')
    return buf.getvalue()
