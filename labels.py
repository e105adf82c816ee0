from io import BytesIO

import qrcode
from PIL import Image, ImageDraw, ImageFont


# ========================
# Traveller card QR label
# ========================
def _load_font(font_name, size):
    try:
        return ImageFont.truetype(font_name, size)
    except OSError:
        return ImageFont.load_default()


def render_traveller_label(job, font_name="arial.ttf"):
    """PNG bytes: a QR code of the job number with the job caption underneath."""
    job_no = job.job_id.upper()
    qr = qrcode.make(job_no).convert("RGB")

    captions = [job_no]
    if job.ref_no:
        captions.append(f"Ref {job.ref_no}")
    captions.append(f"{job.customer_name} / {job.part_no or '-'}")

    width, height = qr.size
    line_height = 24
    new_height = height + 10 + line_height * len(captions)
    img_with_text = Image.new("RGB", (width, new_height), "white")
    img_with_text.paste(qr, (0, 0))

    draw = ImageDraw.Draw(img_with_text)
    font = _load_font(font_name, 18)
    for index, text in enumerate(captions):
        bbox = draw.textbbox((0, 0), text, font=font)
        text_width = bbox[2] - bbox[0]
        text_x = max((width - text_width) // 2, 0)
        draw.text((text_x, height + index * line_height), text, fill="black", font=font)

    buffer = BytesIO()
    img_with_text.save(buffer, format="PNG")
    return buffer.getvalue()
