"""Best-effort drug interaction lookup against openFDA drug labels.

Never raises and never blocks saving a medication: every failure turns into
an ``unknown`` result.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

import httpx
from pydantic import BaseModel

from ..config import settings

logger = logging.getLogger(__name__)

LABEL_SECTIONS = ("drug_interactions", "warnings", "warnings_and_cautions")
CONTEXT_CHARS = 80


class InteractionResult(BaseModel):
    status: str  # safe | warning | unknown
    message: str
    severity: Optional[str] = None  # low | moderate | high
    drug_a: Optional[str] = None
    drug_b: Optional[str] = None


def _unknown(message: str) -> List[InteractionResult]:
    return [InteractionResult(status="unknown", message=message)]


def find_mentions(new_drug: str, label_text: str, existing_drugs: Sequence[str]) -> List[InteractionResult]:
    """Match each existing drug name as a whole word in the label text."""
    text = label_text.lower()
    results: List[InteractionResult] = []

    for drug in existing_drugs:
        drug_lower = drug.lower().strip()
        if not drug_lower:
            continue
        variants = {drug_lower, re.sub(r"\s+", "", drug_lower)}
        found = any(re.search(rf"\b{re.escape(v)}\b", text) for v in variants)
        if not found:
            continue

        context = re.search(
            rf".{{0,{CONTEXT_CHARS}}}{re.escape(drug_lower)}.{{0,{CONTEXT_CHARS}}}",
            text,
            flags=re.DOTALL,
        )
        if context:
            message = (
                f'Potential interaction detected: {new_drug} and {drug}: "{context.group(0).strip()}..."'
            )
        else:
            message = (
                f"Potential interaction detected: {new_drug} and {drug} may interact. "
                "Consult your healthcare provider."
            )
        results.append(
            InteractionResult(
                status="warning",
                message=message,
                severity="moderate",
                drug_a=new_drug,
                drug_b=drug,
            )
        )

    if not results:
        results.append(
            InteractionResult(
                status="safe",
                message=f"No known interactions found between {new_drug} and your current medications.",
            )
        )
    return results


async def check_drug_interaction(
    new_drug: str,
    existing_drugs: Sequence[str],
    client: Optional[httpx.AsyncClient] = None,
) -> List[InteractionResult]:
    if not existing_drugs:
        return [InteractionResult(status="safe", message="No existing medications to check against.")]

    name = new_drug.strip()
    params = {
        "search": f'openfda.brand_name:"{name}" openfda.generic_name:"{name}"',
        "limit": 1,
    }

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=settings.fda_timeout_sec)
    try:
        resp = await client.get(settings.fda_base_url, params=params)
        if resp.status_code == 404:
            # openFDA answers "no matches" with 404
            return _unknown(f'No FDA data found for "{new_drug}". Please consult your pharmacist.')
        if resp.status_code >= 400:
            return _unknown(f"FDA API returned status {resp.status_code}. Interaction check skipped.")
        data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("FDA interaction check failed (%s): %s", type(exc).__name__, exc)
        return _unknown("Interaction check failed. Please consult your pharmacist.")
    finally:
        if own_client:
            await client.aclose()

    results = data.get("results") if isinstance(data, dict) else None
    if not results:
        return _unknown(f'No FDA data found for "{new_drug}". Please consult your pharmacist.')

    label = results[0]
    chunks: List[str] = []
    for section in LABEL_SECTIONS:
        value = label.get(section) or []
        if isinstance(value, str):
            value = [value]
        chunks.extend(str(v) for v in value)

    return find_mentions(new_drug, " ".join(chunks), existing_drugs)
