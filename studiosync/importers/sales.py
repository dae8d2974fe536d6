"""Sales importer: sales or payment transactions -> revenue lines.

The site-level sales endpoint is tried first. When it reports no sales for
the date range, the importer switches (for the rest of the run) to the
payment transactions endpoint and rebuilds line items from it, looking up
the sale detail when a transaction carries no itemized amounts.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from studiosync.core.errors import (
    SourceAPIError,
    SourceAuthError,
    SourceRateLimitError,
    SourceTimeoutError,
)
from studiosync.db.entities import upsert_revenue
from studiosync.importers.base import (
    BaseImporter,
    ImportRun,
    PageResult,
    is_page_fatal,
    nested_value,
    source_id,
)
from studiosync.source.client import Page
from studiosync.utils.dates import format_api_date, parse_source_datetime

SALES_ENDPOINT = "/sale/sales"
TRANSACTIONS_ENDPOINT = "/sale/transactions"

MODE_SALES = "sales"
MODE_TRANSACTIONS = "transactions"

# Tried in order; the first present value wins
TRANSACTION_DATE_FIELDS: tuple[tuple[str, ...], ...] = (
    ("SaleDateTime",),
    ("CreatedDateTime",),
    ("TransactionDate",),
    ("CompletedDate",),
    ("SettlementDate",),
    ("SettlementDateTime",),
    ("TransactionTime", "DateTime"),
    ("TransactionTime",),
    ("AuthTime", "DateTime"),
    ("AuthTime",),
)

# Detail lookup failures that must stop the page rather than fall back
FATAL_LOOKUP_ERRORS = (SourceRateLimitError, SourceAuthError, SourceTimeoutError)


def _decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def purchased_items(record: dict[str, Any]) -> list[dict[str, Any]]:
    items = record.get("PurchasedItems")
    if isinstance(items, list):
        return [i for i in items if isinstance(i, dict)]
    if isinstance(items, dict):
        return [items]
    return []


def item_amount(item: dict[str, Any]) -> Decimal | None:
    """``Amount``, else ``UnitPrice * Quantity``, else None."""
    amount = _decimal(item.get("Amount"))
    if amount is not None:
        return amount
    unit_price = _decimal(item.get("UnitPrice"))
    quantity = _decimal(item.get("Quantity"))
    if unit_price and quantity:
        return unit_price * quantity
    return None


def item_description(item: dict[str, Any]) -> str:
    description = item.get("Name") or item.get("Description") or "Unknown item"
    quantity = _decimal(item.get("Quantity"))
    if quantity is not None and quantity > 1:
        description = f"{description} (Qty: {item['Quantity']})"
    return description


def item_type(item: dict[str, Any]) -> str:
    if item.get("IsService"):
        return "Service"
    return item.get("Type") or "Product"


def item_id(item: dict[str, Any]) -> str | None:
    return source_id(item.get("Id")) or source_id(item.get("SaleDetailId"))


def transaction_date(transaction: dict[str, Any]) -> datetime | None:
    """First date field present on a transaction, parsed; None if unusable.

    An object value (even one without ``DateTime``) counts as present, so
    it wins over later fields and then fails to parse.
    """
    for path in TRANSACTION_DATE_FIELDS:
        value = nested_value(transaction, *path)
        if isinstance(value, dict):
            return None
        if value:
            return parse_source_datetime(value)
    return None


def payment_description(transaction: dict[str, Any]) -> tuple[str, str]:
    """(payment method, description) for an item-less transaction row."""
    method = transaction.get("Method") or transaction.get("CardType") or "Payment"
    last_four = transaction.get("CCLastFour") or transaction.get("LastFour") or ""
    status = transaction.get("Status") or "Completed"
    if last_four:
        return method, f"{method} ending in {last_four} ({status})"
    return method, f"{method} ({status})"


class SalesImporter(BaseImporter):
    data_type = "sales"
    record_type = "sale"

    async def import_page(self, run: ImportRun, start_offset: int) -> PageResult:
        students = await run.students()
        page, mode = await self._fetch(run, start_offset)
        result = PageResult()

        async with run.session_factory() as session:
            if mode == MODE_SALES:
                await self._import_sales(session, run, page, students, result)
            else:
                await self._import_transactions(session, run, page, students, result)
            await session.commit()

        return await self._finish(run, page, result)

    async def _fetch(self, run: ImportRun, offset: int) -> tuple[Page, str]:
        mode = run.cache.sales_mode
        if mode in (None, MODE_SALES):
            page = await run.client.fetch_page(
                SALES_ENDPOINT,
                "Sales",
                offset,
                page_size=run.page_size,
                params={
                    "StartDate": format_api_date(run.start_date),
                    "EndDate": format_api_date(run.end_date),
                },
            )
            if mode is None:
                mode = MODE_SALES if page.total_results > 0 or page.results else MODE_TRANSACTIONS
                run.cache.sales_mode = mode
                if mode == MODE_TRANSACTIONS:
                    self.logger.info(
                        "sales_fallback_to_transactions", job_id=run.job_id, offset=offset
                    )
            if mode == MODE_SALES:
                return page, mode

        page = await run.client.fetch_page(
            TRANSACTIONS_ENDPOINT,
            "Transactions",
            offset,
            page_size=run.page_size,
            params={
                "StartSaleDateTime": run.window_start.isoformat(),
                "EndSaleDateTime": run.window_end.isoformat(),
            },
        )
        return page, MODE_TRANSACTIONS

    async def _write_items(
        self,
        session: AsyncSession,
        run: ImportRun,
        result: PageResult,
        *,
        sale_id: str,
        items: list[dict[str, Any]],
        student_id: UUID | None,
        when: datetime,
    ) -> int:
        """Write each line item in its own savepoint. Returns rows written."""
        written = 0
        for item in items:
            try:
                amount = item_amount(item)
                # Zero-amount lines are not real transactions
                if not amount:
                    continue
                async with session.begin_nested():
                    await upsert_revenue(
                        session,
                        organization_id=run.organization_id,
                        source_sale_id=sale_id,
                        source_item_id=item_id(item),
                        student_id=student_id,
                        amount=amount,
                        revenue_type=item_type(item),
                        description=item_description(item),
                        transaction_date=when,
                    )
            except Exception as exc:
                if is_page_fatal(exc):
                    raise
                await self._skip_failed(session, run, result, item, exc, record_id=sale_id)
                continue
            written += 1
        return written

    async def _import_sales(
        self,
        session: AsyncSession,
        run: ImportRun,
        page: Page,
        students: dict[str, UUID],
        result: PageResult,
    ) -> None:
        outside_window = 0
        for index, sale in enumerate(page.results):
            await self._maybe_yield(index)

            try:
                sale_id = source_id(sale.get("Id"))
                sold_at = parse_source_datetime(sale.get("SaleDateTime"))
                if sale_id is None or sold_at is None:
                    result.skipped += 1
                    continue
                if not (run.window_start <= sold_at < run.window_end):
                    outside_window += 1
                    continue

                items = purchased_items(sale)
                student_id = students.get(source_id(sale.get("ClientId")) or "")
            except Exception as exc:
                if is_page_fatal(exc):
                    raise
                await self._skip_failed(session, run, result, sale, exc)
                continue

            result.imported += await self._write_items(
                session,
                run,
                result,
                sale_id=sale_id,
                items=items,
                student_id=student_id,
                when=sold_at,
            )

        if outside_window:
            self.logger.info(
                "sales_outside_date_range", job_id=run.job_id, count=outside_window
            )
        result.skipped += outside_window

    async def _sale_detail_items(
        self, run: ImportRun, sale_id: str, details: dict[str, list[dict[str, Any]]]
    ) -> list[dict[str, Any]]:
        """Line items from the per-sale detail endpoint; empty when unavailable."""
        if sale_id in details:
            return details[sale_id]
        try:
            data = await run.client.request(f"{SALES_ENDPOINT}/{sale_id}")
        except FATAL_LOOKUP_ERRORS:
            raise
        except SourceAPIError as exc:
            self.logger.info("sale_detail_unavailable", sale_id=sale_id, error=str(exc))
            data = {}

        sale = data.get("Sale")
        items = purchased_items(sale) if isinstance(sale, dict) else []
        details[sale_id] = [i for i in items if item_amount(i) is not None]
        return details[sale_id]

    async def _import_transactions(
        self,
        session: AsyncSession,
        run: ImportRun,
        page: Page,
        students: dict[str, UUID],
        result: PageResult,
    ) -> None:
        details: dict[str, list[dict[str, Any]]] = {}

        for index, transaction in enumerate(page.results):
            await self._maybe_yield(index)

            try:
                await self._import_transaction(
                    session, run, transaction, students, details, result
                )
            except Exception as exc:
                if is_page_fatal(exc):
                    raise
                await self._skip_failed(
                    session,
                    run,
                    result,
                    transaction,
                    exc,
                    record_id=source_id(nested_value(transaction, "TransactionId")),
                )

    async def _import_transaction(
        self,
        session: AsyncSession,
        run: ImportRun,
        transaction: dict[str, Any],
        students: dict[str, UUID],
        details: dict[str, list[dict[str, Any]]],
        result: PageResult,
    ) -> None:
        when = transaction_date(transaction)
        if when is None:
            self.logger.debug(
                "transaction_without_date",
                transaction_id=transaction.get("TransactionId") or transaction.get("Id"),
            )
            result.skipped += 1
            return

        student_id = students.get(source_id(transaction.get("ClientId")) or "")
        sale_id = source_id(transaction.get("SaleId"))

        items = [i for i in purchased_items(transaction) if item_amount(i) is not None]
        if not items and sale_id:
            items = await self._sale_detail_items(run, sale_id, details)

        if items and sale_id:
            result.imported += await self._write_items(
                session,
                run,
                result,
                sale_id=sale_id,
                items=items,
                student_id=student_id,
                when=when,
            )
            return

        revenue_key = sale_id or source_id(transaction.get("TransactionId"))
        amount = _decimal(transaction.get("Amount"))
        if revenue_key is None:
            result.skipped += 1
            return
        if not amount:
            return

        method, description = payment_description(transaction)
        async with session.begin_nested():
            await upsert_revenue(
                session,
                organization_id=run.organization_id,
                source_sale_id=revenue_key,
                source_item_id=None,
                student_id=student_id,
                amount=amount,
                revenue_type=method,
                description=description,
                transaction_date=when,
            )
        result.imported += 1
