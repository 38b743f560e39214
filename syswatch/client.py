import argparse
import json
import sys
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_URL = "http://127.0.0.1:5004"


def make_session(retries=3, backoff=0.6):
    s = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "PUT"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


class MonitorClient:
    """Thin wrapper over the REST API. HTTP errors surface as requests.HTTPError."""

    def __init__(self, base_url: str = DEFAULT_URL, *, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or make_session()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        r = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        r.raise_for_status()
        return r.json()

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/api/health")

    def latest_metrics(self) -> Dict[str, Any]:
        return self._request("GET", "/api/metrics/latest")

    def active_alerts(self):
        return self._request("GET", "/api/alerts/active")

    def resolve_alert(self, alert_id: int, resolved_by: Optional[str] = None):
        return self._request("PUT", f"/api/alerts/{alert_id}/resolve", json={"resolved_by": resolved_by})

    def resolve_all(self, alert_type: Optional[str] = None, severity: Optional[str] = None, resolved_by=None):
        body = {"alert_type": alert_type, "severity": severity, "resolved_by": resolved_by}
        return self._request("PUT", "/api/alerts/resolve-all", json=body)

    def thresholds(self) -> Dict[str, float]:
        return self._request("GET", "/api/alerts/thresholds")

    def update_thresholds(self, **changes: float) -> Dict[str, float]:
        return self._request("PUT", "/api/alerts/thresholds", json=changes)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="syswatch-ctl", description="Query a running SysWatch backend")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--timeout", type=float, default=10)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health")
    sub.add_parser("latest")
    sub.add_parser("alerts")

    resolve = sub.add_parser("resolve")
    resolve.add_argument("alert_id", type=int)
    resolve.add_argument("--by", dest="resolved_by")

    resolve_all = sub.add_parser("resolve-all")
    resolve_all.add_argument("--type", dest="alert_type")
    resolve_all.add_argument("--severity")
    resolve_all.add_argument("--by", dest="resolved_by")

    thresholds = sub.add_parser("thresholds")
    for name in ("cpu", "memory", "disk", "temperature", "load"):
        thresholds.add_argument(f"--{name}", type=float)
    return parser


def main(argv=None, client: Optional[MonitorClient] = None) -> int:
    args = build_parser().parse_args(argv)
    client = client or MonitorClient(args.url, timeout=args.timeout)

    try:
        if args.command == "health":
            result = client.health()
        elif args.command == "latest":
            result = client.latest_metrics()
        elif args.command == "alerts":
            result = client.active_alerts()
        elif args.command == "resolve":
            result = client.resolve_alert(args.alert_id, args.resolved_by)
        elif args.command == "resolve-all":
            result = client.resolve_all(args.alert_type, args.severity, args.resolved_by)
        else:
            changes = {
                k: getattr(args, k)
                for k in ("cpu", "memory", "disk", "temperature", "load")
                if getattr(args, k) is not None
            }
            result = client.update_thresholds(**changes) if changes else client.thresholds()
    except requests.RequestException as e:
        print(f"Request failed: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
