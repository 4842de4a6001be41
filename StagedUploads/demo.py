from __future__ import annotations

import tempfile
from pathlib import Path
from urllib.parse import urlsplit

from fastapi.testclient import TestClient

from StagedUploads.api.main import create_app
from StagedUploads.core.config import Settings

API_KEY = "demo-admin-key"


def main() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        settings = Settings(
            DATABASE_URL=f"sqlite:///{Path(tmp) / 'demo.db'}",
            STORAGE_BACKEND="memory",
            RUN_SWEEPER=False,
            API_KEYS={API_KEY: "admin"},
        )
        headers = {"X-API-Key": API_KEY}
        with TestClient(create_app(settings)) as client:
            issued = client.post(
                "/grants",
                json={
                    "owner_id": "admin123",
                    "file_name": "photo.jpg",
                    "content_type": "image/jpeg",
                    "size_bytes": 1_048_576,
                },
                headers=headers,
            )
            issued.raise_for_status()
            grant = issued.json()["grant"]
            upload = issued.json()["upload"]
            print(f"Issued grant {grant['upload_id']} expiring {grant['expires_at']}")

            target = urlsplit(upload["url"])
            uploaded = client.put(
                f"{target.path}?{target.query}",
                content=b"\xff\xd8\xff\xe0" + b"\x00" * 1020,
                headers=upload["headers"],
            )
            print("Upload response:", uploaded.status_code, uploaded.json()["status"])

            promoted = client.post(
                "/promotions",
                json={
                    "upload_id": grant["upload_id"],
                    "owner_id": "admin123",
                    "destination": "notices/notice-9999/",
                },
                headers=headers,
            )
            print("Promotion response:", promoted.status_code, promoted.json())

            foreign = client.post(
                "/promotions",
                json={
                    "upload_id": grant["upload_id"],
                    "owner_id": "admin456",
                    "destination": "notices/notice-9999/",
                },
                headers=headers,
            )
            print("Foreign owner:", foreign.status_code, foreign.json())


if __name__ == "__main__":
    main()
