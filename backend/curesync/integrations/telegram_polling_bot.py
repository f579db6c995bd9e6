from __future__ import annotations

import asyncio
import logging
from textwrap import dedent
from typing import Any, Dict, Optional, Tuple

import httpx

from ..config import settings
from ..core.log import configure_logging

logger = logging.getLogger(__name__)

# Use config-driven API base, defaulting to local dev
API_BASE = settings.api_base_url or "http://localhost:8000"

NOTIFICATION_POLL_INTERVAL = 5.0
NOTIFICATION_FETCH_LIMIT = 20
NOTIFICATION_CONSUMER_ID = "telegram-polling-bot"
TELEGRAM_POLL_TIMEOUT = 25  # seconds

DOSE_ACTIONS = {"taken": "taken", "skip": "skipped"}


def _build_telegram_base_url() -> str:
    token = settings.telegram_bot_token
    if not token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN not set in .env")
    return f"https://api.telegram.org/bot{token}"


# ---------- Backend calls ----------


async def register_chat_with_backend(client: httpx.AsyncClient, chat: dict) -> None:
    payload = {
        "chat_id": chat["id"],
        "chat_type": chat.get("type", "private"),
        "username": chat.get("username"),
        "title": chat.get("title"),
    }
    resp = await client.post(f"{API_BASE}/integrations/telegram/register", json=payload)
    resp.raise_for_status()


async def mute_chat_with_backend(client: httpx.AsyncClient, chat_id: int) -> None:
    resp = await client.post(f"{API_BASE}/integrations/telegram/{chat_id}/mute")
    resp.raise_for_status()


async def call_backend_today(client: httpx.AsyncClient) -> Dict[str, Any]:
    resp = await client.get(f"{API_BASE}/today")
    resp.raise_for_status()
    return resp.json()


async def call_backend_medications(client: httpx.AsyncClient) -> list[Dict[str, Any]]:
    resp = await client.get(f"{API_BASE}/medications")
    resp.raise_for_status()
    return resp.json()


async def record_dose(client: httpx.AsyncClient, medication_id: int, status: str) -> Dict[str, Any]:
    resp = await client.post(
        f"{API_BASE}/medications/{medication_id}/doses",
        json={"status": status},
    )
    resp.raise_for_status()
    return resp.json()


# ---------- Telegram calls ----------


async def send_message(
    client: httpx.AsyncClient,
    base_url: str,
    chat_id: int,
    text: str,
    reply_markup: Optional[dict] = None,
) -> None:
    payload: Dict[str, Any] = {
        "chat_id": chat_id,
        "text": text,
    }
    if reply_markup:
        payload["reply_markup"] = reply_markup

    resp = await client.post(f"{base_url}/sendMessage", json=payload)
    resp.raise_for_status()


def dose_buttons(medication_id: int) -> dict:
    return {
        "inline_keyboard": [
            [
                {"text": "✅ Taken", "callback_data": f"taken:{medication_id}"},
                {"text": "⏭ Skip", "callback_data": f"skip:{medication_id}"},
            ]
        ]
    }


async def answer_callback_query(client: httpx.AsyncClient, base_url: str, callback_id: str, text: str) -> None:
    try:
        await client.post(
            f"{base_url}/answerCallbackQuery",
            json={"callback_query_id": callback_id, "text": text},
        )
    except httpx.HTTPError as exc:
        logger.warning("failed to answer callback: %s", exc)


# ---------- Formatting ----------


def format_today_message(data: Dict[str, Any]) -> str:
    lines = [
        f"💊 Today: {data['taken']}/{data['total']} doses taken, {data['skipped']} skipped",
    ]
    nxt = data.get("next")
    if nxt:
        lines.append(f"➡️ Next: {nxt['name']} at {nxt['time']}")
    lines.append("")

    if not data["timeline"]:
        lines.append("No medications scheduled.")
    for slot in data["timeline"]:
        if slot["status"] == "taken":
            mark = "✅"
        elif slot["status"] == "skipped":
            mark = "⏭"
        elif slot["is_past"]:
            mark = "⚠️"
        else:
            mark = "🕒"
        dosage = f" ({slot['dosage']})" if slot.get("dosage") else ""
        lines.append(f"{mark} {slot['time']} {slot['name']}{dosage}")

    return "\n".join(lines)


def format_medications_message(medications: list[Dict[str, Any]]) -> str:
    if not medications:
        return "No medications saved yet."

    lines = ["📋 Your medications:"]
    for m in medications:
        dosage = m.get("dosage") or "no dosage"
        lines.append(
            f"- {m['name']} ({dosage}), {m['schedule_description']}, {m['inventory_count']} left"
        )
    return "\n".join(lines)


def parse_callback_data(data: str) -> Optional[Tuple[str, int]]:
    """'taken:12' -> ('taken', 12); None for anything else."""
    action, sep, raw_id = data.partition(":")
    if not sep or action not in DOSE_ACTIONS:
        return None
    try:
        return DOSE_ACTIONS[action], int(raw_id)
    except ValueError:
        return None


# ---------- Handlers ----------


async def handle_command(
    client: httpx.AsyncClient,
    base_url: str,
    chat_id: int,
    text: str,
    message: dict,
) -> None:
    if text.startswith("/start"):
        await register_chat_with_backend(client, message["chat"])
        msg = dedent(
            """
            👋 Hi, I'll remind you when it's time for your medication.

            - today's doses: /today
            - your medications: /meds
            - stop reminders in this chat: /mute
            """
        ).strip()
        await send_message(client, base_url, chat_id, msg)
        return

    if text.startswith("/today"):
        await send_message(client, base_url, chat_id, format_today_message(await call_backend_today(client)))
        return

    if text.startswith("/meds"):
        await send_message(
            client, base_url, chat_id, format_medications_message(await call_backend_medications(client))
        )
        return

    if text.startswith("/mute"):
        await mute_chat_with_backend(client, chat_id)
        await send_message(client, base_url, chat_id, "Reminders muted. Send /start to turn them back on.")
        return

    await send_message(client, base_url, chat_id, "I know /today, /meds and /mute.")


async def handle_callback_query(
    client: httpx.AsyncClient,
    base_url: str,
    callback_query: dict,
) -> None:
    data = callback_query.get("data") or ""
    callback_id = callback_query.get("id")
    chat_id = (callback_query.get("message") or {}).get("chat", {}).get("id")

    if not data or not callback_id:
        return

    parsed = parse_callback_data(data)
    if parsed is None:
        await answer_callback_query(client, base_url, callback_id, "Unsupported action.")
        return

    status, medication_id = parsed
    try:
        dose = await record_dose(client, medication_id, status)
    except httpx.HTTPError as exc:
        logger.warning("failed to record %s dose for medication %s: %s", status, medication_id, exc)
        await answer_callback_query(client, base_url, callback_id, "Failed, try again.")
        return

    await answer_callback_query(client, base_url, callback_id, f"Marked {status}.")
    if chat_id and status == "taken":
        await send_message(client, base_url, chat_id, f"Noted. {dose['inventory_count']} left.")


# ---------- Outbox delivery ----------


async def fetch_pending_notifications(client: httpx.AsyncClient) -> list[dict]:
    resp = await client.get(
        f"{API_BASE}/notifications/pending",
        params={
            "limit": NOTIFICATION_FETCH_LIMIT,
            "consumer_id": NOTIFICATION_CONSUMER_ID,
            "lock_seconds": 60,
        },
    )
    resp.raise_for_status()
    return resp.json()


async def deliver_notification(client: httpx.AsyncClient, base_url: str, notif: dict) -> None:
    payload = notif.get("payload") or {}
    if notif.get("channel") != "telegram":
        raise ValueError(f"unsupported channel {notif.get('channel')}")

    chat_id = payload.get("chat_id")
    if not chat_id:
        raise ValueError("missing chat_id")

    text = payload.get("text") or f"⏰ Time for {payload.get('name') or 'your medication'}"
    medication_id = payload.get("medication_id")
    markup = dose_buttons(medication_id) if medication_id is not None else None
    await send_message(client, base_url, chat_id, text, reply_markup=markup)


async def process_pending_notifications(client: httpx.AsyncClient, base_url: str) -> int:
    try:
        notifications = await fetch_pending_notifications(client)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("fetch notifications failed (%s): %s", type(exc).__name__, exc)
        return 0

    delivered = 0
    for notif in notifications:
        event_id = notif.get("id")
        if not event_id:
            continue
        try:
            await deliver_notification(client, base_url, notif)
        except (httpx.HTTPError, ValueError) as exc:
            await client.post(
                f"{API_BASE}/notifications/{event_id}/fail",
                json={"error_message": str(exc)[:500]},
            )
        else:
            await client.post(f"{API_BASE}/notifications/{event_id}/ack")
            delivered += 1
        await asyncio.sleep(0)  # yield control
    return delivered


# ---------- Main loop ----------


async def polling_loop() -> None:
    base_url = _build_telegram_base_url()
    offset: Optional[int] = None
    next_notification_poll = 0.0
    loop = asyncio.get_running_loop()

    while True:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(connect=10.0, read=60.0, write=10.0, pool=10.0),
                transport=httpx.AsyncHTTPTransport(retries=3),
            ) as client:
                while True:
                    params: Dict[str, Any] = {"timeout": TELEGRAM_POLL_TIMEOUT}
                    if offset is not None:
                        params["offset"] = offset

                    resp = await client.get(f"{base_url}/getUpdates", params=params)
                    if resp.status_code != 200:
                        logger.warning("getUpdates HTTP %s: %s", resp.status_code, resp.text[:200])
                        await asyncio.sleep(5)
                        continue

                    for update in resp.json().get("result", []):
                        offset = update["update_id"] + 1

                        callback_query = update.get("callback_query")
                        if callback_query:
                            await handle_callback_query(client, base_url, callback_query)
                            continue

                        message = update.get("message") or {}
                        chat_id = message.get("chat", {}).get("id")
                        text = (message.get("text") or "").strip()
                        if chat_id and text:
                            await handle_command(client, base_url, chat_id, text, message)

                    now = loop.time()
                    if now >= next_notification_poll:
                        await process_pending_notifications(client, base_url)
                        next_notification_poll = now + NOTIFICATION_POLL_INTERVAL
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("telegram client error (%s): %s", type(exc).__name__, exc)

        # Recreate client after transient failure
        await asyncio.sleep(2)


async def main() -> None:
    configure_logging(settings.log_level)
    logger.info("starting CureSync Telegram polling bot")
    await polling_loop()


if __name__ == "__main__":
    asyncio.run(main())
