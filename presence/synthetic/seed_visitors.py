"""Register a burst of synthetic tabs against a running API to see the toast grouping."""
import argparse
import json
import time
import urllib.request
from typing import List

from ..client.agent import new_session_id
from .. import config
from ..config import load_settings


def burst(n: int, now_ms: int = None) -> List[str]:
    ts = now_ms if now_ms is not None else config.now_ms()
    return [new_session_id(ts) for _ in range(n)]


def post_one(base_url: str, session_id: str, action: str = "register") -> dict:
    data = json.dumps({"sessionId": session_id, "action": action, "includeCount": True}).encode("utf-8")
    req = urllib.request.Request(
        base_url.rstrip("/") + "/visitors",
        data=data,
        headers={"Content-Type": "application/json"},
    )
    with urllib.request.urlopen(req) as r:
        return json.loads(r.read())


def main(argv=None):
    ap = argparse.ArgumentParser(description=__doc__)
    ap.add_argument("--tabs", type=int, default=5)
    ap.add_argument("--spacing-ms", type=int, default=50, help="delay between registrations")
    ap.add_argument("--url", default=load_settings().api_url)
    args = ap.parse_args(argv)

    last = {}
    for sid in burst(args.tabs):
        last = post_one(args.url, sid)
        time.sleep(args.spacing_ms / 1000.0)
    print(f"[seed] registered {args.tabs} tabs, active={last.get('count')}")


if __name__ == "__main__":
    main()
