"""Invoice documents: assembly from the local store, rendering and upload."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from billsync.core.config import settings
from billsync.errors import NotFound, RenderFailure, UploadFailure
from billsync.formatters import format_currency, format_date, format_date_time, format_phone_number
from billsync.services.entity_store import LocalEntityStore

log = logging.getLogger(__name__)


@runtime_checkable
class DocumentRenderer(Protocol):
    def render(self, invoice_document: Mapping[str, Any]) -> bytes:
        ...


@runtime_checkable
class FileStorage(Protocol):
    def upload(self, payload: bytes, path: str, content_type: str = "application/pdf") -> str:
        ...


class HttpDocumentRenderer:
    """Posts the invoice document as JSON and returns the PDF bytes. One attempt per call."""

    def __init__(
        self,
        base_url: str = settings.RENDERER_URL,
        *,
        timeout: float = settings.REMOTE_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required for HttpDocumentRenderer")
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def render(self, invoice_document: Mapping[str, Any]) -> bytes:
        try:
            response = self._client.post(f"{self._base_url}/render", json=dict(invoice_document))
        except httpx.HTTPError as exc:
            raise RenderFailure(f"Renderer unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise RenderFailure(f"Renderer returned {response.status_code}: {response.text[:200]}")
        return response.content


class HttpFileStorage:
    """Object storage upload (Supabase-storage style paths); returns the public URL."""

    def __init__(
        self,
        base_url: str = settings.STORAGE_URL,
        bucket: str = settings.STORAGE_BUCKET,
        api_key: str = settings.REMOTE_API_KEY,
        *,
        timeout: float = settings.REMOTE_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required for HttpFileStorage")
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{quote(path)}"

    def upload(self, payload: bytes, path: str, content_type: str = "application/pdf") -> str:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{quote(path)}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "apikey": self._api_key,
            "Content-Type": content_type,
            "x-upsert": "true",
        }
        try:
            response = self._client.post(url, content=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UploadFailure(f"Upload of {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise UploadFailure(f"Upload of {path} rejected ({response.status_code}): {response.text[:200]}")
        return self.public_url(path)


class InvoiceDocumentService:
    def __init__(
        self,
        store: LocalEntityStore,
        *,
        renderer: Optional[DocumentRenderer] = None,
        storage: Optional[FileStorage] = None,
    ):
        self._store = store
        self._renderer = renderer
        self._storage = storage

    def build_document(self, invoice_id: str) -> Dict[str, Any]:
        """Everything a renderer needs to lay out one invoice, pre-formatted for display."""
        invoice = self._store.invoice_with_items(invoice_id)
        if invoice is None:
            raise NotFound(f"invoices/{invoice_id} not found")
        store_row = self._store.stores.get(invoice["store_id"]) if invoice.get("store_id") else None
        customer = self._store.customers.get(invoice["customer_id"]) if invoice.get("customer_id") else None

        items = []
        for index, item in enumerate(invoice["items"], start=1):
            items.append(
                {
                    "index": index,
                    "description": item["description"],
                    "hsn_code": item.get("hsn_code") or "",
                    "quantity": item["quantity"],
                    "unit_price": format_currency(item["unit_price"]),
                    "discount_percent": item.get("discount_percent") or 0,
                    "gst_rate": item.get("gst_rate") or 0,
                    "gst_amount": format_currency(item.get("gst_amount") or 0),
                    "line_total": format_currency(item["line_total"]),
                }
            )

        totals = {
            "subtotal": format_currency(invoice["subtotal"]),
            "discount": format_currency(invoice["discount_amount"]),
            "total": format_currency(invoice["total_amount"]),
        }
        if invoice["is_gst_invoice"]:
            if invoice["is_same_state"]:
                totals["cgst"] = format_currency(invoice["cgst_amount"])
                totals["sgst"] = format_currency(invoice["sgst_amount"])
            else:
                totals["igst"] = format_currency(invoice["igst_amount"])

        return {
            "invoice_number": invoice["invoice_number"],
            "invoice_date": format_date(invoice["invoice_date"]),
            "due_date": format_date(invoice["due_date"]) if invoice.get("due_date") else None,
            "created_at": format_date_time(invoice["created_at"]),
            "status": invoice["status"],
            "is_gst_invoice": invoice["is_gst_invoice"],
            "served_by": invoice.get("employee_code") or "",
            "store": {
                "name": (store_row or {}).get("name") or "",
                "address": (store_row or {}).get("address") or "",
                "phone": format_phone_number((store_row or {}).get("phone") or ""),
                "gstin": (store_row or {}).get("gstin") or "",
            },
            "customer": {
                "name": (customer or {}).get("name") or "Walk-in customer",
                "phone": format_phone_number((customer or {}).get("phone") or ""),
                "gstin": (customer or {}).get("gstin") or "",
                "address": (customer or {}).get("billing_address") or "",
            },
            "items": items,
            "totals": totals,
            "notes": invoice.get("notes") or "",
            "terms": invoice.get("terms") or "",
        }

    def render_pdf(self, invoice_id: str) -> bytes:
        if self._renderer is None:
            raise ValueError("No document renderer configured")
        return self._renderer.render(self.build_document(invoice_id))

    def publish_pdf(self, invoice_id: str) -> str:
        """Render the invoice and upload it; returns the public URL."""
        if self._storage is None:
            raise ValueError("No file storage configured")
        document = self.build_document(invoice_id)
        if self._renderer is None:
            raise ValueError("No document renderer configured")
        pdf = self._renderer.render(document)
        invoice = self._store.invoices.get(invoice_id)
        path = f"{invoice['store_id'] or 'default'}/{document['invoice_number']}.pdf"
        url = self._storage.upload(pdf, path, "application/pdf")
        log.info("Published %s to %s", document["invoice_number"], url)
        return url
