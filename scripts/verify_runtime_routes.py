import json
import os
import sys

import httpx


def main() -> int:
    base_url = os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8000").rstrip("/")
    api_key = os.getenv("VERIFY_API_KEY", "dev-key")
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
        app_version_header = version.headers.get("X-Brain-App-Version")
        print(f"[INFO] /version status={version.status_code} X-Brain-App-Version={app_version_header}")
        if version.status_code == 200:
            print(f"[OK] version payload: {json.dumps(version.json(), sort_keys=True)}")
        else:
            print("[WARN] /version missing. You may be running an older server process.")

        metrics = client.get("/metrics")
        if metrics.status_code != 200 or "merges_total" not in metrics.text:
            print(f"[FAIL] /metrics unexpected status={metrics.status_code}")
            return 2
        print("[OK] /metrics exposes upload counters.")

        files = client.get("/files", headers={"X-API-Key": api_key})
        print(f"[INFO] /files status={files.status_code}")
        if files.status_code == 200:
            print(f"[OK] /files total={files.json()['total']}")
            return 0
        if files.status_code in (401, 403):
            print("[FAIL] /files rejected the API key. Check VERIFY_API_KEY and API_KEY_MAPPINGS.")
            return 3

        print(f"[FAIL] /files unexpected status: {files.status_code}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
