"""OAuth state helpers for the mailbox connect flow."""

import hashlib
import json
import secrets


def generate_oauth_state() -> str:
    """Generate cryptographically random state (32 bytes, URL-safe base64)."""
    return secrets.token_urlsafe(32)


def hash_user_agent(user_agent: str) -> str:
    """
    Hash of the user-agent bound to the OAuth state.

    A stolen state cookie only replays from the same browser.
    """
    return hashlib.sha256(user_agent.encode()).hexdigest()[:16]


def create_oauth_state_payload(state: str, agent_id: str, user_agent: str) -> str:
    """
    JSON payload for the OAuth state cookie.

    Includes:
    - state: CSRF protection
    - agent_id: the agent whose mailbox is being connected
    - ua_hash: User-agent binding
    """
    payload = {
        "state": state,
        "agent_id": agent_id,
        "ua_hash": hash_user_agent(user_agent),
    }
    return json.dumps(payload)


def parse_oauth_state_payload(cookie_value: str) -> dict:
    return json.loads(cookie_value)


def verify_oauth_state(stored_payload: dict, received_state: str, user_agent: str) -> tuple[bool, str]:
    """
    Verify OAuth callback state matches stored state.

    Returns:
        (success, error_message)
    """
    if not received_state or not secrets.compare_digest(str(stored_payload.get("state", "")), received_state):
        return False, "State mismatch"
    if stored_payload.get("ua_hash") != hash_user_agent(user_agent):
        return False, "User-agent mismatch"
    return True, ""
