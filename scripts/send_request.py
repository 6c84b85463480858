#!/usr/bin/env python3
"""
Send a request through a running CORS relay.

This script builds the `cors` policy document from command-line flags,
sends it to the relay, and prints what came back.

Usage:
    python scripts/send_request.py --url http://localhost:9001/echo
    python scripts/send_request.py --url http://localhost:9001/echo --method POST --body '{"a": 1}'
    python scripts/send_request.py --url http://localhost:9001/echo --set-request-header authorization "Bearer t"
    python scripts/send_request.py --url http://localhost:9001/echo --delete-response-header server
"""
from __future__ import annotations

import argparse
import json

import httpx


def build_policy(args: argparse.Namespace) -> dict:
    """Build the policy document from parsed arguments."""
    policy: dict = {"url": args.url}
    if args.method:
        policy["method"] = args.method
    if args.body is not None:
        policy["body"] = args.body
    if args.no_follow:
        policy["followRedirect"] = False
    if args.no_forward_ip:
        policy["forwardIpAddress"] = False
    if args.set_request_header:
        policy["setRequestHeaders"] = args.set_request_header
    if args.append_response_header:
        policy["appendResponseHeaders"] = args.append_response_header
    if args.delete_response_header:
        policy["deleteResponseHeaders"] = args.delete_response_header
    if args.status:
        policy["setStatusCode"] = args.status
    return policy


def send(policy: dict, relay_url: str, origin: str):
    """Send the policy to the relay and print the response."""
    print(f"\n📤 Relaying: {policy.get('method', 'GET')} {policy['url']}")
    
    try:
        response = httpx.get(
            relay_url,
            params={"cors": json.dumps(policy)},
            headers={"Origin": origin},
            timeout=10.0
        )
        
        print(f"\n📥 Response ({response.status_code}):")
        for name, value in response.headers.multi_items():
            print(f"   {name}: {value}")
        print(f"\n{response.text}")
            
    except httpx.RequestError as e:
        print(f"\n❌ Error: {e}")
        print("   Is the relay running? (python -m corsproxy.main)")


def main():
    parser = argparse.ArgumentParser(description="Send a request through the CORS relay")
    parser.add_argument("--url", required=True, help="Upstream target URL")
    parser.add_argument("--method", help="Upstream method (default: GET)")
    parser.add_argument("--body", help="Literal request body")
    parser.add_argument("--no-follow", action="store_true", help="Do not follow redirects")
    parser.add_argument("--no-forward-ip", action="store_true", help="Do not send x-forwarded-for")
    parser.add_argument("--set-request-header", nargs=2, action="append", metavar=("NAME", "VALUE"))
    parser.add_argument("--append-response-header", nargs=2, action="append", metavar=("NAME", "VALUE"))
    parser.add_argument("--delete-response-header", action="append", metavar="NAME")
    parser.add_argument("--status", type=int, help="Override the status code returned to the caller")
    parser.add_argument("--origin", default="http://localhost:3000", help="Origin header to send")
    parser.add_argument("--relay-url", default="http://localhost:4444/", help="Relay URL")
    
    args = parser.parse_args()
    send(build_policy(args), args.relay_url, args.origin)


if __name__ == "__main__":
    main()
