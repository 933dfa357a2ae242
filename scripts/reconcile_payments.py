"""Print the payment reconciliation report, optionally expiring lapsed links first
and listing dead-lettered webhook deliveries."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for reconciliation checks."""

    parser = argparse.ArgumentParser(description="Fetch the clinic API payment reconciliation report.")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--expire-stale", action="store_true", help="expire created orders past their link expiry")
    parser.add_argument("--provider", help="also list dead-lettered deliveries for this provider")
    args = parser.parse_args()

    headers = {"X-API-Key": args.api_key}
    with httpx.Client(base_url=args.api_url, headers=headers, timeout=10.0) as client:
        if args.expire_stale:
            resp = client.post("/internal/payments/expire-stale")
            resp.raise_for_status()
            expired = resp.json()["expired"]
        else:
            expired = 0
        resp = client.get("/internal/reconciliation", params={"limit": args.limit})
        resp.raise_for_status()
        report = resp.json()
        if args.provider:
            resp = client.get("/internal/dead-letters", params={"provider": args.provider, "limit": args.limit})
            resp.raise_for_status()
            report["dead_letters"] = resp.json()["items"]
    report["expired_orders"] = expired
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
