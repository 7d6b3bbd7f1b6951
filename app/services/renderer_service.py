"""Renderer service — invoice PDFs from the document rendering service.

The renderer is an internal HTTP service: we POST the invoice payload and
it answers with the storage path of the generated PDF. Rendering is
best-effort. A missing renderer or a failed call never affects the
invoice itself; only pdf_status / pdf_path are updated.
"""

import logging

import requests
from flask import current_app

from app.extensions import db
from app.models.invoice import Invoice

logger = logging.getLogger(__name__)


class RendererError(Exception):
    """The rendering service could not produce a document."""


def _get_renderer_config():
    """Return renderer config if available, else None."""
    url = current_app.config.get("INVOICE_RENDERER_URL")
    if not url:
        return None
    return {
        "url": url.rstrip("/"),
        "token": current_app.config.get("INVOICE_RENDERER_TOKEN"),
        "timeout": current_app.config.get("INVOICE_RENDERER_TIMEOUT", 10),
    }


def render_invoice_pdf(invoice):
    """Ask the renderer for a PDF of the invoice. Returns the file path.

    Raises RendererError on any transport or protocol failure.
    """
    config = _get_renderer_config()
    if config is None:
        raise RendererError("No invoice renderer configured")

    headers = {"Content-Type": "application/json"}
    if config["token"]:
        headers["Authorization"] = f"Bearer {config['token']}"

    try:
        resp = requests.post(
            config["url"],
            json=invoice.to_dict(),
            headers=headers,
            timeout=config["timeout"],
        )
        resp.raise_for_status()
        path = resp.json().get("path")
    except (requests.RequestException, ValueError) as e:
        raise RendererError(f"Renderer call failed: {e}")

    if not path:
        raise RendererError("Renderer returned no file path")
    return path


def request_invoice_render(invoice):
    """Render an issued invoice and record the outcome. Never raises.

    Commits the pdf bookkeeping columns only.
    """
    if _get_renderer_config() is None:
        invoice.pdf_status = Invoice.PDF_SKIPPED
        db.session.commit()
        return invoice

    try:
        invoice.pdf_path = render_invoice_pdf(invoice)
        invoice.pdf_status = Invoice.PDF_RENDERED
        logger.info(f"Rendered invoice {invoice.display_number} to {invoice.pdf_path}")
    except RendererError as e:
        invoice.pdf_status = Invoice.PDF_FAILED
        logger.error(f"Invoice {invoice.display_number} rendering failed: {e}")

    db.session.commit()
    return invoice
