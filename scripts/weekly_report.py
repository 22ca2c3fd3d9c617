import argparse
import json

import requests


def format_duration(minutes: int) -> str:
    sign = "-" if minutes < 0 else ""
    minutes = abs(minutes)
    return f"{sign}{minutes // 60}h {minutes % 60}m"


def render_report(report: dict) -> str:
    lines = [
        f"Weekly Activity Report  {report['week_start']} - {report['week_end']}",
        f"Total Time: {report['total_formatted']}",
        "",
    ]
    if not report["groups"]:
        lines.append("(no tagged events this week)")
    for group in report["groups"]:
        lines.append(f"#{group['tag']}  {group['total_formatted']}")
        for ev in group["events"]:
            start = (ev.get("start_at") or "")[:16].replace("T", " ")
            lines.append(f"  {start}  {format_duration(ev.get('duration') or 0):>8}  {ev.get('summary') or ''}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def main() -> None:
    parser = argparse.ArgumentParser(description="Print the weekly time-per-tag report")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--session", required=True, help="session_id cookie value from a signed-in browser")
    parser.add_argument("--start-date", default="", help="any day in the week, YYYY-MM-DD")
    parser.add_argument("--tags", default="", help="comma-separated tags to include")
    parser.add_argument("--json", action="store_true", help="print the raw JSON payload")
    args = parser.parse_args()

    params = {}
    if args.start_date:
        params["startDate"] = args.start_date
    if args.tags:
        params["projectTags"] = args.tags

    url = f"{args.base_url.rstrip('/')}/api/reports/weekly"
    resp = requests.get(url, params=params, cookies={"session_id": args.session}, timeout=20)
    if not resp.ok:
        print(resp.status_code, resp.text)
        raise SystemExit(1)

    report = resp.json()
    if args.json:
        print(json.dumps(report, indent=2))
        return
    print(render_report(report), end="")


if __name__ == "__main__":
    main()
