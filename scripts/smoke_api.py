#!/usr/bin/env python3
"""
Manual smoke check against a running portfolio sync API.

Signs in, saves and reads an element, creates a share link, opens it as a
guest and deletes the element again.
"""

import argparse
import os
import sys

import dotenv
import requests

dotenv.load_dotenv()


def check(label, response, expected=200):
    ok = response.status_code == expected
    print(f"{'✅' if ok else '❌'} {label}: {response.status_code}")
    if not ok:
        print(f"   {response.text}")
    return ok


def main():
    parser = argparse.ArgumentParser(description="Smoke test a running portfolio sync API")
    parser.add_argument("--base-url", default=os.getenv("API_BASE_URL", "http://localhost:8000"))
    parser.add_argument("--username", default=os.getenv("OWNER_USERNAME"))
    parser.add_argument("--password", default=os.getenv("OWNER_PASSWORD"))
    args = parser.parse_args()

    if not args.username or not args.password:
        print("❌ Owner credentials required (--username/--password or OWNER_USERNAME/OWNER_PASSWORD)")
        return 1

    base = args.base_url.rstrip("/")
    try:
        if not check("health", requests.get(f"{base}/health", timeout=5)):
            return 1

        response = requests.post(f"{base}/auth/login", json={"username": args.username, "password": args.password},
                                 timeout=5)
        if not check("login", response):
            return 1
        headers = {"Authorization": f"Bearer {response.json()['token']}"}

        element = {"element_type": "text", "element_id": "smoke_test", "value": "Smoke test value"}
        if not check("upsert", requests.post(f"{base}/rpc/upsert", json=element, headers=headers, timeout=5)):
            return 1

        response = requests.get(f"{base}/rpc/get", params={"element_type": "text", "element_id": "smoke_test"},
                                headers=headers, timeout=5)
        if check("get", response):
            print(f"   value: {response.json()['elements'][0]['value']}")

        response = requests.post(f"{base}/shares", json={"target_type": "text", "target_id": "smoke_test",
                                                         "expires_in_days": 1}, headers=headers, timeout=5)
        if check("create share", response):
            share = response.json()
            print(f"   url: {share['url']}")
            check("open share as guest", requests.get(f"{base}/shares/{share['share_id']}/content", timeout=5))
            check("revoke share", requests.delete(f"{base}/shares/{share['share_id']}", headers=headers, timeout=5))

        check("delete", requests.delete(f"{base}/elements/text/smoke_test", headers=headers, timeout=5))
    except requests.RequestException as e:
        print(f"❌ Could not reach {base}: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
