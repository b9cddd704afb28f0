#!/usr/bin/env python3
"""
Operations utilities - CLI for health checks, circuit resets and the review queue.
Talks to a running decision API over HTTP.
"""

import argparse
import os
import sys

import requests

DEFAULT_API_URL = os.getenv("VERDICT_API_URL", "http://localhost:8000")
TIMEOUT_SEC = 10


def _request(method: str, api_url: str, path: str, **kwargs):
    response = requests.request(method, f"{api_url.rstrip('/')}{path}", timeout=TIMEOUT_SEC, **kwargs)
    response.raise_for_status()
    return response.json()


def health_command(args):
    """Show windowed health signals and guardrail state."""
    try:
        data = _request("GET", args.api_url, "/ops/health")
    except requests.RequestException as e:
        print(f"❌ Failed to reach API: {e}")
        sys.exit(1)

    health = data["health"]
    guardrails = data["guardrails"]
    print(f"Status: {health['status']} (action required: {health['action_required']})")
    print(f"Decisions in window: {health['total_decisions']}")
    for signal in health["signals"]:
        value = "n/a" if signal["value"] is None else signal["value"]
        print(f"   {signal['name']}: {value} [{signal['status']}]")

    print(f"Inference circuit open: {guardrails['circuit_open']}")
    print(f"Assurance paused: {guardrails['assurance_paused']}")
    print(f"Inference provider reachable: {data['inference_available']}")
    for alert in guardrails["alerts"]:
        print(f"   ⚠️  [{alert['severity']}] {alert['title']}: {alert['description']}")
        print(f"      Action: {alert['action']}")

    if health["status"] == "critical":
        sys.exit(2)


def reset_circuit_command(args):
    """Reset one or all guardrail circuits."""
    try:
        data = _request("POST", args.api_url, "/ops/guardrails/reset", json={"target": args.target})
    except requests.RequestException as e:
        print(f"❌ Reset failed: {e}")
        sys.exit(1)

    print(f"✅ Reset {data['target']}")
    print(f"   Inference circuit open: {data['guardrails']['circuit_open']}")
    print(f"   Assurance paused: {data['guardrails']['assurance_paused']}")


def run_reviews_command(args):
    """Run the review triggers now."""
    params = {"topic_id": args.topic_id} if args.topic_id else None
    try:
        data = _request("POST", args.api_url, "/reviews/run", params=params)
    except requests.RequestException as e:
        print(f"❌ Review run failed: {e}")
        sys.exit(1)

    print(f"✅ Review sweep raised {data['created']} review(s)")
    for review in data["reviews"]:
        print(f"   {review['review_id']} {review['reason_code']} topic={review['topic_id']}")


def pending_reviews_command(args):
    """List pending review records."""
    try:
        reviews = _request("GET", args.api_url, "/reviews/pending", params={"limit": args.limit})
    except requests.RequestException as e:
        print(f"❌ Failed to list reviews: {e}")
        sys.exit(1)

    if not reviews:
        print("No pending reviews")
        return

    print(f"{len(reviews)} pending review(s):")
    for review in reviews:
        decision = review["decision_id"] or "-"
        print(f"   {review['created_at']} {review['review_id']} {review['reason_code']} "
              f"topic={review['topic_id']} decision={decision}")
        print(f"      {review['reason_details']}")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Verdict Operations CLI Utilities",
        prog="python scripts/ops_util.py"
    )
    parser.add_argument("--api-url", default=DEFAULT_API_URL, help=f"API base URL (default: {DEFAULT_API_URL})")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    health_parser = subparsers.add_parser("health", help="Show health signals and guardrail state")
    health_parser.set_defaults(func=health_command)

    reset_parser = subparsers.add_parser("reset-circuit", help="Reset guardrail circuits")
    reset_parser.add_argument("--target", choices=["inference", "artifact", "all"], default="all")
    reset_parser.set_defaults(func=reset_circuit_command)

    run_parser = subparsers.add_parser("run-reviews", help="Run the review triggers now")
    run_parser.add_argument("--topic-id", default=None, help="Limit the sweep to one topic")
    run_parser.set_defaults(func=run_reviews_command)

    pending_parser = subparsers.add_parser("pending-reviews", help="List pending reviews")
    pending_parser.add_argument("--limit", type=int, default=50)
    pending_parser.set_defaults(func=pending_reviews_command)

    return parser


def main(argv=None):
    """Main CLI entry point for operations utilities."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
