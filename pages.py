# pages.py
"""Static HTML fragments and pairing-code rendering."""
from __future__ import annotations

import base64
import html
import io
import logging
from typing import List

import qrcode
import qrcode.image.svg

from bulk_intake import BulkResult

logger = logging.getLogger("pages")

_HEAD = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    {extra_head}
    <link rel="stylesheet" href="https://www.w3schools.com/w3css/4/w3.css">
    <link rel="stylesheet" href="https://fonts.googleapis.com/css?family=Raleway">
    <style>
        body,h1 {{font-family: "Raleway", sans-serif}}
        body, html {{height: 100%}}
        .bgimg {{
            background-image: url('https://w0.peakpx.com/wallpaper/818/148/HD-wallpaper-whatsapp-background-cool-dark-green-new-theme-whatsapp.jpg');
            min-height: 100%;
            background-position: center;
            background-size: cover;
        }}
    </style>
</head>
"""


def _page(title: str, body: str, extra_head: str = "") -> str:
    return _HEAD.format(title=html.escape(title), extra_head=extra_head) + f"""<body>
    <div class="bgimg w3-display-container w3-animate-opacity w3-text-white">
        <div class="w3-display-topleft w3-padding-large w3-xlarge">WhatsGPT</div>
        <div class="w3-display-middle">
{body}
        </div>
        <div class="w3-display-bottomleft w3-padding-large">Powered by <a href="/">WhatsGPT</a></div>
    </div>
</body>
</html>
"""


def qr_data_url(code: str) -> str:
    image = qrcode.make(code, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"


def print_terminal_qr(code: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(code)
    qr.print_ascii(invert=True)
    logger.info("Pairing code received; scan it with WhatsApp > Linked devices")


def landing_page() -> str:
    body = """            <h2 class="w3-jumbo w3-animate-top">WhatsGPT</h2>
            <hr class="w3-border-grey" style="margin:auto;width:40%">
            <form class="w3-container" action="/submit" method="post">
                <input class="w3-input" name="phoneNumber" placeholder="Phone number" required>
                <input class="w3-input" name="message" placeholder="Prompt" required>
                <button class="w3-button w3-white" type="submit">Link WhatsApp</button>
            </form>
            <form class="w3-container" action="/upload" method="post" enctype="multipart/form-data">
                <input class="w3-input" type="file" name="csvFile" accept=".csv,text/csv">
                <input class="w3-input" name="initialMessage" placeholder="Initial message">
                <button class="w3-button w3-white" type="submit">Send bulk messages</button>
            </form>"""
    return _page("WhatsGPT", body)


def pairing_page(code: str) -> str:
    body = f"""            <center>
                <h2 class="w3-jumbo w3-animate-top">QRCode Generated</h2>
                <hr class="w3-border-grey" style="margin:auto;width:40%">
                <p class="w3-center"><div><img src='{qr_data_url(code)}'/></div></p>
            </center>"""
    return _page("WhatsGPT", body)


def pairing_timeout_page(timeout_seconds: float) -> str:
    body = f"""            <h2 class="w3-jumbo w3-animate-top">Still waiting</h2>
            <hr class="w3-border-grey" style="margin:auto;width:40%">
            <p class="w3-large w3-center">No QR code arrived within {timeout_seconds:g} seconds. This page will retry shortly.</p>
            <p class="w3-center"><a href="" class="w3-button w3-white">Retry now</a></p>"""
    return _page("WhatsGPT", body, extra_head='<meta http-equiv="refresh" content="5">')


def bulk_sent_page(result: BulkResult) -> str:
    failures: List[str] = [html.escape(row.phone) for row in result.failed]
    failed_line = ""
    if failures:
        failed_line = f'\n            <p class="w3-center">Could not reach: {", ".join(failures)}</p>'
    body = f"""            <h2 class="w3-jumbo w3-animate-top">Messages Sent!</h2>
            <hr class="w3-border-grey" style="margin:auto;width:40%">
            <p class="w3-large w3-center">Bulk messages have been sent to {result.attempted} contacts.</p>{failed_line}
            <p class="w3-center"><a href="/" class="w3-button w3-white">Back to Home</a></p>"""
    return _page("WhatsGPT - Bulk Messages Sent", body)
