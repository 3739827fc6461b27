"""Supabase (PostgREST) store.

Reads go straight to the tables, filtered by the owning user. Writes that touch
more than one row go through database functions so they commit as one
transaction:

- ``persist_story_segment(p_payload jsonb)``: optional story insert, segment,
  choices, chosen-choice link, status change, balance decrement and ledger row.
  Raises ``insufficient_credits`` / ``story_not_found`` / unique violation 23505
  on ``(story_id, position)``. Refuses any write once the story has an
  ``is_end`` segment (``story_ended``).
- ``persist_segment_media(p_payload jsonb)``: media urls plus optional charge.
  Locks the segment row first; when the segment already has audio, an audio
  write keeps the stored url and skips the charge and ledger row.
- ``grant_credits(p_payload jsonb)``: balance increment plus ledger row.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from tale_forge.common.config import Settings
from tale_forge.common.errors import (
    ConflictError,
    DatabaseError,
    InsufficientCreditsError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from tale_forge.common.models import (
    STORY_UPDATE_FIELDS,
    Character,
    CreditTransaction,
    MediaWrite,
    PersistedSegment,
    SegmentWrite,
    Story,
    StoryChoice,
    StorySegment,
    UserCredits,
)

logger = logging.getLogger(__name__)

STORY_COLUMNS = (
    "id,user_id,title,description,genre,target_age,status,setting,characters,"
    "chapters,words_per_chapter,include_audio,created_at"
)
SEGMENT_COLUMNS = "id,story_id,content,position,image_url,image_prompt,audio_url,provider,created_at"
CHOICE_COLUMNS = "id,segment_id,text,next_segment_id"
CREDIT_COLUMNS = "user_id,current_balance,total_earned,total_spent,is_admin,audio_enabled"
TRANSACTION_COLUMNS = (
    "id,user_id,transaction_type,amount,balance_after,description,"
    "reference_id,reference_type,created_at"
)


def _raise_for_response(resp: httpx.Response, what: str) -> None:
    if resp.status_code < 400:
        return
    try:
        body = resp.json() or {}
    except ValueError:
        body = {}
    code = str(body.get("code") or "") if isinstance(body, dict) else ""
    message = str(body.get("message") or "") if isinstance(body, dict) else ""
    lowered = message.lower()
    if resp.status_code == 409 or code == "23505":
        raise ConflictError(f"Conflicting {what}", details={"code": code or None})
    if "story_ended" in lowered:
        raise ConflictError("Story has already ended")
    if "insufficient_credits" in lowered:
        raise InsufficientCreditsError("Not enough credits")
    if "story_not_found" in lowered or "segment_not_found" in lowered:
        raise NotFoundError("Story not found" if "story" in lowered else "Segment not found")
    logger.error("Supabase %s failed: %s %s", what, resp.status_code, message or resp.text[:200])
    raise DatabaseError(f"Database error ({what})", details={"status": resp.status_code})


def _choice_from_row(row: Dict[str, Any]) -> StoryChoice:
    return StoryChoice(
        id=str(row["id"]),
        segment_id=str(row.get("segment_id") or ""),
        text=row.get("text") or "",
        next_segment_id=row.get("next_segment_id"),
    )


def _segment_from_row(row: Dict[str, Any], choices: List[Dict[str, Any]]) -> StorySegment:
    return StorySegment(
        id=str(row["id"]),
        story_id=str(row.get("story_id") or ""),
        content=row.get("content") or "",
        position=int(row.get("position") or 0),
        choices=[_choice_from_row(c) for c in choices],
        image_url=row.get("image_url"),
        image_prompt=row.get("image_prompt"),
        audio_url=row.get("audio_url"),
        provider=row.get("provider"),
        is_end=bool(row.get("is_end")),
        created_at=row.get("created_at") or "",
    )


def _story_from_row(row: Dict[str, Any], segments: Optional[List[StorySegment]] = None) -> Story:
    characters = [
        Character(
            name=c.get("name") or "",
            description=c.get("description") or "",
            role=c.get("role") or "",
            traits=list(c.get("traits") or []),
        )
        for c in (row.get("characters") or [])
        if isinstance(c, dict)
    ]
    return Story(
        id=str(row["id"]),
        user_id=str(row.get("user_id") or ""),
        title=row.get("title") or "Story",
        description=row.get("description") or "",
        genre=row.get("genre") or "fantasy",
        target_age=row.get("target_age") or "",
        status=row.get("status") or "draft",
        setting=row.get("setting") or "",
        characters=characters,
        chapters=int(row.get("chapters") or 5),
        words_per_chapter=int(row.get("words_per_chapter") or 200),
        include_audio=bool(row.get("include_audio")),
        segments=segments or [],
        created_at=row.get("created_at") or "",
    )


def _transaction_from_row(row: Optional[Dict[str, Any]]) -> Optional[CreditTransaction]:
    if not row:
        return None
    return CreditTransaction(
        id=str(row["id"]),
        user_id=str(row.get("user_id") or ""),
        transaction_type=row.get("transaction_type") or "spend",
        amount=int(row.get("amount") or 0),
        balance_after=int(row.get("balance_after") or 0),
        description=row.get("description") or "",
        reference_id=row.get("reference_id"),
        reference_type=row.get("reference_type"),
        created_at=row.get("created_at") or "",
    )


def _credits_from_row(row: Dict[str, Any]) -> UserCredits:
    return UserCredits(
        user_id=str(row["user_id"]),
        current_balance=int(row.get("current_balance") or 0),
        total_earned=int(row.get("total_earned") or 0),
        total_spent=int(row.get("total_spent") or 0),
        is_admin=bool(row.get("is_admin")),
        audio_enabled=bool(row.get("audio_enabled")),
    )


def _story_payload(story: Story) -> Dict[str, Any]:
    data = story.to_dict(with_segments=False)
    data.pop("created_at", None)
    return data


class SupabaseStore:
    def __init__(self, settings: Settings, *, timeout: float = 30.0):
        if not settings.supabase_admin_enabled:
            raise ServiceUnavailableError(
                "Supabase is not configured (SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY)."
            )
        self.url = settings.supabase_url.rstrip("/")
        self.key = settings.supabase_service_role_key
        self.timeout = timeout

    def _headers(self, **extra: str) -> Dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
            **extra,
        }

    def _rest_url(self, path: str) -> str:
        return f"{self.url}/rest/v1/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    self._rest_url(path),
                    params=params,
                    json=json,
                    headers=headers or self._headers(),
                )
        except httpx.TransportError as e:
            logger.error("Supabase %s unreachable: %s", what, e)
            raise DatabaseError(f"Database unavailable ({what})") from e
        _raise_for_response(resp, what)
        if not resp.content:
            return None
        return resp.json()

    async def _rpc(self, fn: str, payload: Dict[str, Any], what: str) -> Dict[str, Any]:
        data = await self._request("POST", f"rpc/{fn}", what, json={"p_payload": payload})
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise DatabaseError(f"Database returned no result for {what}")
        return data

    # --- stories -------------------------------------------------------------
    async def _load_segments(self, story_id: str) -> List[StorySegment]:
        rows = await self._request(
            "GET",
            "story_segments",
            "segments",
            params={
                "story_id": f"eq.{story_id}",
                "select": SEGMENT_COLUMNS,
                "order": "position.asc",
            },
        ) or []
        if not rows:
            return []
        ids = ",".join(str(r["id"]) for r in rows)
        choice_rows = await self._request(
            "GET",
            "story_choices",
            "choices",
            params={"segment_id": f"in.({ids})", "select": CHOICE_COLUMNS, "order": "created_at.asc"},
        ) or []
        by_segment: Dict[str, List[Dict[str, Any]]] = {}
        for c in choice_rows:
            by_segment.setdefault(str(c.get("segment_id")), []).append(c)
        return [_segment_from_row(r, by_segment.get(str(r["id"]), [])) for r in rows]

    async def get_story(self, user_id: str, story_id: str) -> Optional[Story]:
        rows = await self._request(
            "GET",
            "stories",
            "story",
            params={"id": f"eq.{story_id}", "user_id": f"eq.{user_id}", "select": STORY_COLUMNS},
        ) or []
        if not rows:
            return None
        return _story_from_row(rows[0], await self._load_segments(story_id))

    async def list_stories(self, user_id: str) -> List[Story]:
        rows = await self._request(
            "GET",
            "stories",
            "stories",
            params={"user_id": f"eq.{user_id}", "select": STORY_COLUMNS, "order": "created_at.desc"},
        ) or []
        return [_story_from_row(r) for r in rows]

    async def delete_story(self, user_id: str, story_id: str) -> bool:
        if await self.get_story(user_id, story_id) is None:
            return False
        # children first: choices, segments, then the story row
        segments = await self._request(
            "GET",
            "story_segments",
            "segments",
            params={"story_id": f"eq.{story_id}", "select": "id"},
        ) or []
        if segments:
            ids = ",".join(str(r["id"]) for r in segments)
            await self._request("DELETE", "story_choices", "choices", params={"segment_id": f"in.({ids})"})
            await self._request("DELETE", "story_segments", "segments", params={"story_id": f"eq.{story_id}"})
        await self._request(
            "DELETE",
            "stories",
            "story",
            params={"id": f"eq.{story_id}", "user_id": f"eq.{user_id}"},
        )
        return True

    async def update_story(self, user_id: str, story_id: str, changes: Dict[str, Any]) -> Story:
        unknown = set(changes) - set(STORY_UPDATE_FIELDS)
        if unknown:
            raise ValidationError("Fields cannot be updated", details={"fields": sorted(unknown)})
        rows = await self._request(
            "PATCH",
            "stories",
            "story",
            params={"id": f"eq.{story_id}", "user_id": f"eq.{user_id}", "select": STORY_COLUMNS},
            json=changes,
            headers=self._headers(Prefer="return=representation"),
        ) or []
        if not rows:
            raise NotFoundError("Story not found")
        return _story_from_row(rows[0])

    # --- credits -------------------------------------------------------------
    async def get_credits(self, user_id: str) -> Optional[UserCredits]:
        rows = await self._request(
            "GET",
            "user_credits",
            "credits",
            params={"user_id": f"eq.{user_id}", "select": CREDIT_COLUMNS},
        ) or []
        return _credits_from_row(rows[0]) if rows else None

    async def list_transactions(self, user_id: str, *, limit: int = 50) -> List[CreditTransaction]:
        rows = await self._request(
            "GET",
            "credit_transactions",
            "transactions",
            params={
                "user_id": f"eq.{user_id}",
                "select": TRANSACTION_COLUMNS,
                "order": "created_at.desc",
                "limit": str(limit),
            },
        ) or []
        return [t for t in (_transaction_from_row(r) for r in rows) if t is not None]

    async def grant_credits(
        self,
        user_id: str,
        amount: int,
        *,
        description: str,
        transaction_type: str = "grant",
        reference_id: Optional[str] = None,
    ) -> UserCredits:
        data = await self._rpc(
            "grant_credits",
            {
                "user_id": user_id,
                "amount": amount,
                "description": description,
                "transaction_type": transaction_type,
                "reference_id": reference_id,
            },
            "credit grant",
        )
        return _credits_from_row(data.get("credits") or {"user_id": user_id, **data})

    # --- atomic writes -------------------------------------------------------
    async def persist_segment(self, write: SegmentWrite) -> PersistedSegment:
        payload = {
            "user_id": write.user_id,
            "story_id": write.story_id,
            "story": _story_payload(write.new_story) if write.new_story else None,
            "position": write.position,
            "content": write.content,
            "choices": list(write.choices),
            "provider": write.provider,
            "charge": write.charge,
            "charge_description": write.charge_description,
            "chosen_choice_id": write.chosen_choice_id,
            "completes_story": write.completes_story,
            "is_end": write.is_end,
        }
        data = await self._rpc("persist_story_segment", payload, "story segment")
        return self._persisted(data)

    async def persist_media(self, write: MediaWrite) -> PersistedSegment:
        payload = {
            "user_id": write.user_id,
            "story_id": write.story_id,
            "position": write.position,
            "image_url": write.image_url,
            "image_prompt": write.image_prompt,
            "audio_url": write.audio_url,
            "charge": write.charge,
            "charge_description": write.charge_description,
        }
        data = await self._rpc("persist_segment_media", payload, "segment media")
        return self._persisted(data)

    @staticmethod
    def _persisted(data: Dict[str, Any]) -> PersistedSegment:
        seg = data.get("segment")
        if not isinstance(seg, dict):
            raise DatabaseError("Database returned no segment")
        balance = data.get("balance")
        return PersistedSegment(
            segment=_segment_from_row(seg, seg.get("choices") or []),
            balance=int(balance) if balance is not None else None,
            transaction=_transaction_from_row(data.get("transaction")),
        )

    # --- billing customers ---------------------------------------------------
    async def get_customer_id(self, user_id: str) -> Optional[str]:
        rows = await self._request(
            "GET",
            "customers",
            "customer",
            params={"user_id": f"eq.{user_id}", "select": "stripe_customer_id"},
        ) or []
        return rows[0].get("stripe_customer_id") if rows else None

    async def set_customer_id(self, user_id: str, customer_id: str) -> None:
        await self._request(
            "POST",
            "customers",
            "customer",
            params={"on_conflict": "user_id"},
            json={"user_id": user_id, "stripe_customer_id": customer_id},
            headers=self._headers(Prefer="resolution=merge-duplicates,return=minimal"),
        )
