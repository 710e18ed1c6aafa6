import argparse
import getpass
import json
import os
import sys
from datetime import datetime
from pathlib import Path

from .client import (
    DEFAULT_SERVER_URL,
    app_action,
    check_update,
    create_app,
    delete_app,
    get_app,
    get_build_logs,
    get_logs,
    get_ports,
    list_apps,
    login,
    wait_for_settled,
)

CONFIG_PATH = Path.home() / ".nas" / "config"


def get_server_url() -> str:
    """
    Get the controller URL from environment variable or use default.

    Environment variables:
    - NAS_SERVER_URL: Custom server URL
    """
    return os.environ.get("NAS_SERVER_URL", DEFAULT_SERVER_URL)


def get_token(cli_arg: str | None = None) -> str | None:
    """
    Get the session token from multiple sources in priority order.

    Priority (highest to lowest):
    1. Command line argument (--token)
    2. Environment variable (NAS_TOKEN)
    3. Config file (~/.nas/config, written by "nas login")

    Config file format (~/.nas/config):
        token=abc123...
    """
    if cli_arg:
        return cli_arg

    env_token = os.environ.get("NAS_TOKEN")
    if env_token:
        return env_token

    if CONFIG_PATH.exists():
        try:
            for line in CONFIG_PATH.read_text().splitlines():
                line = line.strip()
                if line.startswith("token="):
                    return line[6:].strip()
        except OSError:
            pass  # Unreadable config means no stored token

    return None


def save_token(token: str) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    CONFIG_PATH.write_text(f"token={token}\n")
    os.chmod(CONFIG_PATH, 0o600)


def format_time(time_str: str | None) -> str:
    """Format ISO timestamp to human-readable format."""
    if not time_str:
        return "N/A"
    try:
        dt = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return time_str


def print_auth_help() -> None:
    print("\nAuthentication required. Log in with 'nas login' or provide a token using:", file=sys.stderr)
    print("  1. Command line flag: --token <token>", file=sys.stderr)
    print("  2. Environment variable: NAS_TOKEN=<token>", file=sys.stderr)
    print("  3. Config file: ~/.nas/config (format: token=<token>)", file=sys.stderr)


def print_app(app: dict) -> None:
    print(f"ID:          {app['id']}")
    print(f"Name:        {app['name']}")
    print(f"Status:      {app['status']}")
    print(f"Repository:  {app['repo_url']} ({app['branch']})")
    print(f"Commit:      {app.get('last_commit') or '-'}")
    print(f"Port:        {app['external_port']} -> {app['internal_port']}")
    print(f"Last build:  {format_time(app.get('last_build'))} {app.get('last_build_duration', '')}")
    if app.get("uptime"):
        print(f"Uptime:      {app['uptime']}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="NAS Controller CLI")
    parser.add_argument("--token", help="Session token (can also use NAS_TOKEN or ~/.nas/config)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("login", help="Log in and store the session token")

    list_parser = subparsers.add_parser("list", help="List all apps")
    list_parser.add_argument("--json", dest="json_mode", action="store_true", help="Output in JSON format")

    show_parser = subparsers.add_parser("show", help="Show one app")
    show_parser.add_argument("app_id")

    create_parser = subparsers.add_parser("create", help="Onboard a repository")
    create_parser.add_argument("repo_url")
    create_parser.add_argument("--branch", default="main")
    create_parser.add_argument("--name", default="")
    create_parser.add_argument("--port", type=int, default=0, help="External port override")
    create_parser.add_argument("--no-start", action="store_true", help="Do not build and start")

    for action in ("start", "stop", "restart"):
        action_parser = subparsers.add_parser(action, help=f"{action.capitalize()} an app")
        action_parser.add_argument("app_id")

    for action, text in (("build", "Rebuild an app's image"), ("pull", "Pull latest source and rebuild")):
        action_parser = subparsers.add_parser(action, help=text)
        action_parser.add_argument("app_id")
        action_parser.add_argument("--wait", action="store_true", help="Wait for the result")

    delete_parser = subparsers.add_parser("delete", help="Delete an app and its resources")
    delete_parser.add_argument("app_id")

    update_parser = subparsers.add_parser("check-update", help="Check the remote branch for new commits")
    update_parser.add_argument("app_id")

    logs_parser = subparsers.add_parser("logs", help="Show container or build logs")
    logs_parser.add_argument("app_id")
    logs_parser.add_argument("--tail", type=int, default=100)
    logs_parser.add_argument("--build", action="store_true", help="Show the last build log instead")

    subparsers.add_parser("ports", help="Show the managed port range and used ports")

    return parser


def run_command(args: argparse.Namespace, server_url: str, token: str | None) -> int:
    if args.command == "login":
        password = getpass.getpass("Password: ")
        save_token(login(password, server_url))
        print("✓ Logged in")
        return 0

    if args.command == "list":
        apps = list_apps(server_url, token)
        if args.json_mode:
            print(json.dumps(apps, indent=2))
            return 0
        if not apps:
            print("No apps found.")
            return 0
        print(f"{'APP ID':<38} {'NAME':<25} {'STATUS':<14} {'PORT':<6}")
        print("-" * 85)
        for app in apps:
            print(f"{app['id']:<38} {app['name'][:25]:<25} {app['status']:<14} {app['external_port']:<6}")
        return 0

    if args.command == "show":
        print_app(get_app(args.app_id, server_url, token))
        return 0

    if args.command == "create":
        config: dict = {"auto_start": not args.no_start}
        if args.name:
            config["name"] = args.name
        if args.port:
            config["external_port"] = args.port
        app = create_app(args.repo_url, args.branch, server_url, token, **config)
        print(f"✓ App created: {app['id']} ({app['slug']}) on port {app['external_port']}")
        return 0

    if args.command in ("start", "stop", "restart"):
        app = app_action(args.app_id, args.command, server_url, token)
        print(f"{app['name']}: {app['status']}")
        return 0

    if args.command in ("build", "pull"):
        previous = get_app(args.app_id, server_url, token).get("last_build") if args.wait else None
        result = app_action(args.app_id, args.command, server_url, token)
        print(result["message"])
        if not args.wait:
            return 0
        app = wait_for_settled(args.app_id, server_url, token, previous_build=previous)
        print(f"{app['name']}: {app['status']}")
        return 0 if app["status"] in ("stopped", "running") else 1

    if args.command == "delete":
        print(delete_app(args.app_id, server_url, token)["message"])
        return 0

    if args.command == "check-update":
        result = check_update(args.app_id, server_url, token)
        if result["has_update"]:
            print(f"Update available: {result['local_commit']} -> {result['remote_commit']}")
        else:
            print(f"Up to date at {result['local_commit']}")
        return 0

    if args.command == "logs":
        if args.build:
            print(get_build_logs(args.app_id, server_url, token), end="")
        else:
            print(get_logs(args.app_id, args.tail, server_url, token), end="")
        return 0

    if args.command == "ports":
        ports = get_ports(server_url, token)
        print(f"Range: {ports['range']['start']}-{ports['range']['end']}")
        for port in ports["used_ports"]:
            print(f"  {port}")
        return 0

    return 2


def main():
    """Main entry point for the NAS CLI."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        code = run_command(args, get_server_url(), get_token(args.token))
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        if str(e).startswith("401"):
            print_auth_help()
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted. Background operations continue on the server.", file=sys.stderr)
        sys.exit(130)

    if code == 2:
        parser.print_help()
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
