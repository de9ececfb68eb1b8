import json
import os
import uuid

import httpx


def _check_roundtrip(client: httpx.Client) -> bool:
    file_name = f"verify-{uuid.uuid4().hex[:8]}.txt"
    chunks = [b"filedrop ", b"runtime ", b"check"]
    for index in (2, 0, 1):
        resp = client.put(
            f"/v1/files/{file_name}/chunks/{index}",
            params={"total_chunks": len(chunks)},
            content=chunks[index],
        )
        print(f"[INFO] PUT chunk {index} status={resp.status_code} body={resp.text}")
        if resp.status_code not in (201, 202):
            return False

    download = client.get(f"/v1/files/{file_name}/download")
    ok = download.status_code == 200 and download.content == b"".join(chunks)
    client.delete(f"/v1/files/{file_name}")
    return ok


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8080").rstrip("/")
    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        try:
            health = client.get("/health")
        except httpx.HTTPError as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1

        print(f"[INFO] /health status={health.status_code}")
        if health.status_code != 200:
            print("[FAIL] /health is not healthy.")
            return 1

        version = client.get("/version")
        print(f"[INFO] /version status={version.status_code}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")
        else:
            print("[WARN] /version missing. You may be running an older server process.")

        ui = client.get("/ui")
        print(f"[INFO] /ui status={ui.status_code} X-Filedrop-App-Version={ui.headers.get('X-Filedrop-App-Version')}")
        if ui.status_code != 200:
            print(f"[FAIL] /ui unexpected status: {ui.status_code}")
            return 2

        if not _check_roundtrip(client):
            print("[FAIL] out-of-order chunk upload did not round-trip.")
            return 3
        print("[OK] out-of-order chunk upload round-tripped.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
