from __future__ import annotations

import hashlib
import logging
import sqlite3

from app.core.config import settings
from app.services import ml_api_client
from app.services.llm_service import LLMService, LLMUnavailable, llm_service
from app.services.ml_api_client import MLAPIError
from app.services.persistence import (
    get_competitive_snapshot,
    get_linked_identity,
    list_competitive_snapshots,
    save_competitive_snapshot,
    update_snapshot_suggestions,
)
from app.services.prompts import (
    MONITORING_SYSTEM_PROMPT,
    NO_SUGGESTION_FALLBACK,
    CompetitorLine,
    MonitoringPrompt,
)

logger = logging.getLogger(__name__)


class MonitoringError(Exception):
    code = "monitoring_failed"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotLinked(MonitoringError):
    code = "not_linked"
    status_code = 409


class ListingNotFound(MonitoringError):
    code = "listing_not_found"
    status_code = 404


class CompetitorSearchFailed(MonitoringError):
    code = "competitor_search_failed"
    status_code = 502


class SnapshotPersistenceFailed(MonitoringError):
    code = "persistence_failed"
    status_code = 500


def search_query_from_title(title: str, max_tokens: int | None = None) -> str:
    limit = settings.monitoring_query_tokens if max_tokens is None else max_tokens
    return " ".join(title.split()[: max(1, int(limit))])


def estimate_delivery_days(listing_id: str) -> int:
    """Placeholder delivery estimate, not a marketplace measurement.

    Derived from the listing id so repeated analyses agree.
    """
    low = int(settings.monitoring_delivery_days_min)
    high = max(low, int(settings.monitoring_delivery_days_max))
    digest = hashlib.sha256(str(listing_id).encode("utf-8")).digest()
    return low + int.from_bytes(digest[:4], "big") % (high - low + 1)


def _free_shipping(item: dict) -> bool:
    shipping = item.get("shipping")
    if isinstance(shipping, dict):
        return bool(shipping.get("free_shipping"))
    return False


def _reputation_level(item: dict) -> str:
    seller = item.get("seller")
    if isinstance(seller, dict):
        reputation = seller.get("reputation")
        if isinstance(reputation, dict) and reputation.get("level_id"):
            return str(reputation["level_id"])
    return "unknown"


def as_float(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def as_int(value: object) -> int:
    # Marketplace counters occasionally arrive as "12.0" or 12.0.
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0


def select_competitors(results: list[dict], *, own_listing_id: str, limit: int | None = None) -> list[dict]:
    """Drop the owner's listing and non-new items, keep search order, bound the set."""
    max_items = settings.monitoring_max_competitors if limit is None else limit
    competitors: list[dict] = []

    for item in results:
        if len(competitors) >= max(0, int(max_items)):
            break

        item_id = str(item.get("id") or "")
        if not item_id or item_id == own_listing_id:
            continue
        if item.get("condition") != "new":
            continue

        competitors.append(
            {
                "listing_id": item_id,
                "title": str(item.get("title") or ""),
                "price": as_float(item.get("price")),
                "sold_quantity": as_int(item.get("sold_quantity")),
                "delivery_days": estimate_delivery_days(item_id),
                "shipping_free": _free_shipping(item),
                "reputation_level": _reputation_level(item),
            }
        )

    return competitors


async def generate_suggestions(listing: dict, competitors: list[dict], llm: LLMService) -> str:
    prompt = MonitoringPrompt(
        title=listing["title"],
        price=listing["price"],
        sold_quantity=listing["sold_quantity"],
        shipping_free=listing["shipping_free"],
        competitors=[
            CompetitorLine(
                title=c["title"],
                price=c["price"],
                sold_quantity=c["sold_quantity"],
                shipping_free=c["shipping_free"],
            )
            for c in competitors
        ],
    )

    try:
        return await llm.complete(
            prompt.to_prompt(),
            MONITORING_SYSTEM_PROMPT.format(locale=settings.llm_locale),
        )
    except LLMUnavailable as exc:
        logger.warning("AI suggestions unavailable, using fallback text: %s", exc)
        return NO_SUGGESTION_FALLBACK


async def analyze_listing(*, listing_id: str, user: dict, llm: LLMService | None = None) -> dict:
    user_id = int(user["id"])
    listing_id = listing_id.strip()

    identity = get_linked_identity(user_id)
    access_token = identity["ml_access_token"]
    if not access_token:
        raise NotLinked("Mercado Livre account not connected")

    try:
        item = await ml_api_client.fetch_item(item_id=listing_id, access_token=access_token)
    except MLAPIError as exc:
        raise ListingNotFound(f"listing {listing_id} not found on Mercado Livre") from exc

    title = str(item.get("title") or "").strip()
    if not title:
        raise ListingNotFound(f"listing {listing_id} has no title")

    listing = {
        "title": title,
        "price": as_float(item.get("price")),
        "sold_quantity": as_int(item.get("sold_quantity")),
        "shipping_free": _free_shipping(item),
    }

    query = search_query_from_title(title)
    try:
        results = await ml_api_client.search_items(query=query, limit=settings.monitoring_search_limit)
    except MLAPIError as exc:
        raise CompetitorSearchFailed("unable to search competing listings") from exc

    competitors = select_competitors(results, own_listing_id=listing_id)
    logger.info(
        "Competitive analysis for %s: query=%r results=%s retained=%s",
        listing_id,
        query,
        len(results),
        len(competitors),
    )

    try:
        snapshot = save_competitive_snapshot(
            user_id=user_id,
            ml_listing_id=listing_id,
            product_title=title,
            user_price=listing["price"],
            user_sold_quantity=listing["sold_quantity"],
            user_shipping_free=listing["shipping_free"],
            user_delivery_days=estimate_delivery_days(listing_id),
            competitors=competitors,
        )
    except sqlite3.Error as exc:
        logger.exception("Storing competitive snapshot failed for %s", listing_id)
        raise SnapshotPersistenceFailed("unable to save monitoring data") from exc

    suggestions = await generate_suggestions(listing, competitors, llm or llm_service)

    try:
        update_snapshot_suggestions(snapshot["id"], suggestions)
    except sqlite3.Error as exc:
        logger.exception("Storing AI suggestions failed for snapshot %s", snapshot["id"])
        raise SnapshotPersistenceFailed("unable to save AI suggestions") from exc

    return {
        "snapshot_id": snapshot["id"],
        "listing": listing,
        "competitors": competitors,
        "suggestions": suggestions,
    }


def list_snapshots(user: dict, *, limit: int | None = None, offset: int = 0) -> list[dict]:
    requested = settings.monitoring_list_default_limit if limit is None else int(limit)
    bounded = max(1, min(requested, settings.monitoring_list_max_limit))
    return list_competitive_snapshots(int(user["id"]), limit=bounded, offset=max(0, int(offset)))


def get_snapshot(user: dict, listing_id: str) -> dict:
    snapshot = get_competitive_snapshot(int(user["id"]), listing_id.strip())
    if snapshot is None:
        raise ListingNotFound(f"no competitive snapshot for listing {listing_id}")
    return snapshot
