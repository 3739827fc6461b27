import os

import requests

from tale_forge.common.config import Settings
from tale_forge.common.errors import DatabaseError


class MediaStorage:
    """Segment images and narration, in Supabase Storage or the local media dir."""

    def __init__(self, settings: Settings):
        self.supabase_url = settings.supabase_url
        self.service_key = settings.supabase_service_role_key
        self.bucket = settings.supabase_storage_bucket
        self.use_supabase = settings.use_supabase_storage
        self.media_dir = str(settings.media_dir)
        self.disable_local = settings.disable_local_media

    def _supabase_upload(self, path: str, data: bytes, content_type: str) -> str:
        url = f"{self.supabase_url}/storage/v1/object/{self.bucket}/{path}"
        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
            "Content-Type": content_type,
            "x-upsert": "true",
        }
        try:
            resp = requests.post(url, headers=headers, data=data, timeout=60)
        except requests.RequestException as exc:
            raise DatabaseError("Media upload failed") from exc
        if resp.status_code not in (200, 201):
            raise DatabaseError(
                "Media upload failed", details={"status": resp.status_code}
            )
        return f"{self.supabase_url}/storage/v1/object/public/{self.bucket}/{path}"

    def ensure_media_dir(self) -> None:
        if self.use_supabase or self.disable_local:
            return
        os.makedirs(self.media_dir, exist_ok=True)

    def _save_local(self, story_id: str, filename: str, data: bytes) -> str:
        folder = os.path.join(self.media_dir, story_id)
        os.makedirs(folder, exist_ok=True)
        with open(os.path.join(folder, filename), "wb") as f:
            f.write(data)
        return f"/media/{story_id}/{filename}"

    def save_image_bytes(self, story_id: str, position: int, data: bytes) -> str:
        filename = f"seg_{position}.png"
        if self.use_supabase:
            return self._supabase_upload(f"{story_id}/{filename}", data, "image/png")
        return self._save_local(story_id, filename, data)

    def save_audio_bytes(self, story_id: str, position: int, data: bytes, ext: str = "mp3") -> str:
        filename = f"seg_{position}.{ext}"
        if self.use_supabase:
            return self._supabase_upload(f"{story_id}/{filename}", data, f"audio/{ext}")
        return self._save_local(story_id, filename, data)
