import json
import logging
import requests
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)


def _url(host: str, port: int, path: str) -> str:
    return f"http://{host}:{port}{path}"

def _error_detail(e: requests.exceptions.RequestException) -> str:
    """Pulls the server's error message out of a failed response, if there is one."""
    try:
        return e.response.json().get("detail", "No details provided.")
    except (AttributeError, json.JSONDecodeError, TypeError, ValueError):
        return str(e)

def fetch_status(host: str, port: int) -> Optional[List[Dict[str, Any]]]:
    """
    Fetches the worker list from the running supervisor's control API.

    :return: One snapshot per worker, or None if the supervisor is unreachable.
    """
    try:
        response = requests.get(_url(host, port, "/workers"), timeout=2)
        response.raise_for_status()
        return response.json().get("workers", [])
    except requests.exceptions.RequestException as e:
        log.debug(f"Control API unreachable at {host}:{port}: {e}")
        return None
    except json.JSONDecodeError as e:
        log.error(f"Failed to decode worker status from supervisor: {e}")
        return None

def post_message(host: str, port: int, identity: str, message: str) -> bool:
    """Forwards an operator chat message to one worker. Returns True if the worker accepted it."""
    try:
        response = requests.post(_url(host, port, f"/workers/{identity}/message"), json={"message": message}, timeout=5)
        response.raise_for_status()
        return bool(response.json().get("delivered"))
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to send message to '{identity}': {_error_detail(e)}")
        return False

def post_transcription(host: str, port: int, transcription: str) -> int:
    """Broadcasts a transcription. Returns the number of workers that accepted it."""
    try:
        response = requests.post(_url(host, port, "/transcription"), json={"transcription": transcription}, timeout=5)
        response.raise_for_status()
        return int(response.json().get("delivered", 0))
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to broadcast transcription: {_error_detail(e)}")
        return 0

def request_shutdown(host: str, port: int) -> bool:
    """Asks the supervisor to stop the fleet and exit."""
    try:
        response = requests.post(_url(host, port, "/shutdown"), timeout=5)
        response.raise_for_status()
        log.info("Shutdown request accepted by the supervisor.")
        return True
    except requests.exceptions.RequestException as e:
        log.error(f"Failed to request shutdown: {_error_detail(e)}")
        return False
