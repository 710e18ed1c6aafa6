import time
from typing import Any

import requests

API_PREFIX = "/api/v1"
DEFAULT_SERVER_URL = "http://localhost:13000"


def _request(
    method: str,
    path: str,
    server_url: str = DEFAULT_SERVER_URL,
    token: str | None = None,
    timeout: float = 30,
    **kwargs: Any,
) -> Any:
    """
    Call the controller API and return the decoded JSON body.

    Raises:
        RuntimeError: On network errors or non-2xx responses (with the
                      server's detail message and status code)
    """
    headers = kwargs.pop("headers", {})
    if token:
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.request(
            method, f"{server_url}{API_PREFIX}{path}", headers=headers, timeout=timeout, **kwargs
        )
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error contacting NAS controller: {e}")

    if not response.ok:
        try:
            detail = response.json().get("detail", response.text)
        except ValueError:
            detail = response.text
        raise RuntimeError(f"{response.status_code}: {detail}")

    return response.json()


def login(password: str, server_url: str = DEFAULT_SERVER_URL) -> str:
    """
    Log in with the operator password.

    Returns:
        Session token to pass to the other calls
    """
    result = _request("POST", "/auth/login", server_url, json={"password": password})
    return result["token"]


def list_apps(server_url: str = DEFAULT_SERVER_URL, token: str | None = None) -> list[dict]:
    return _request("GET", "/apps", server_url, token)


def get_app(app_id: str, server_url: str = DEFAULT_SERVER_URL, token: str | None = None) -> dict:
    return _request("GET", f"/apps/{app_id}", server_url, token)


def create_app(
    repo_url: str,
    branch: str = "main",
    server_url: str = DEFAULT_SERVER_URL,
    token: str | None = None,
    **config: Any,
) -> dict:
    """
    Onboard a repository; the server builds and starts it in the background.

    Args:
        repo_url: Repository URL
        branch: Branch to deploy
        **config: Optional overrides (name, external_port, env, ...)
    """
    body = {"repo_url": repo_url, "branch": branch, **config}
    return _request("POST", "/apps", server_url, token, json=body, timeout=300)


def app_action(
    app_id: str, action: str, server_url: str = DEFAULT_SERVER_URL, token: str | None = None
) -> dict:
    """
    Trigger a lifecycle action: start, stop, restart, build or pull.

    start/stop/restart return the updated app; build and pull return as soon
    as the server accepted the background operation.
    """
    if action not in ("start", "stop", "restart", "build", "pull"):
        raise ValueError(f"unknown action: {action}")
    return _request("POST", f"/apps/{app_id}/{action}", server_url, token, timeout=300)


def delete_app(app_id: str, server_url: str = DEFAULT_SERVER_URL, token: str | None = None) -> dict:
    return _request("DELETE", f"/apps/{app_id}", server_url, token, timeout=300)


def check_update(
    app_id: str, server_url: str = DEFAULT_SERVER_URL, token: str | None = None
) -> dict:
    return _request("GET", f"/apps/{app_id}/check-update", server_url, token, timeout=120)


def get_logs(
    app_id: str, tail: int = 100, server_url: str = DEFAULT_SERVER_URL, token: str | None = None
) -> str:
    return _request("GET", f"/apps/{app_id}/logs", server_url, token, params={"tail": tail})["logs"]


def get_build_logs(
    app_id: str, server_url: str = DEFAULT_SERVER_URL, token: str | None = None
) -> str:
    return _request("GET", f"/apps/{app_id}/build-logs", server_url, token)["logs"]


def wait_for_settled(
    app_id: str,
    server_url: str = DEFAULT_SERVER_URL,
    token: str | None = None,
    poll_interval: float = 2.0,
    timeout: float = 1800.0,
    previous_build: str | None = None,
) -> dict:
    """
    Poll an app until it leaves the building/starting states.

    Args:
        previous_build: last_build value seen before triggering a build; keep
                        waiting until the server has recorded a newer one

    Returns:
        The app in its settled state

    Raises:
        RuntimeError: If the app does not settle within the timeout
    """
    deadline = time.monotonic() + timeout
    while True:
        app = get_app(app_id, server_url, token)
        started = previous_build is None or app.get("last_build") != previous_build
        if started and app["status"] not in ("building", "starting"):
            return app
        if time.monotonic() >= deadline:
            raise RuntimeError(f"Timed out waiting for app {app_id} (status {app['status']})")
        time.sleep(poll_interval)


def get_ports(server_url: str = DEFAULT_SERVER_URL, token: str | None = None) -> dict:
    return _request("GET", "/system/ports", server_url, token)
