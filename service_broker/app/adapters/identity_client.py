"""
Identity Service client (browser sessions, self-service flows).
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from shared.errors import UpstreamUnavailableError
from .base import UpstreamClient


class IdentityClient(UpstreamClient):
    """Client for the Identity Service public API."""

    service = "identity"

    async def whoami(self, cookie_header: str) -> Optional[Dict[str, Any]]:
        """Resolve the session behind ``cookie_header``.

        The header is forwarded untouched. Returns the session payload, or
        ``None`` when the Identity Service does not recognise the session.
        """
        response = await self._request(
            "GET",
            "/sessions/whoami",
            operation="whoami",
            accept=(401, 403),
            headers={"Cookie": cookie_header, "Accept": "application/json"},
        )
        if response.status_code in (401, 403):
            return None

        session = self._json(response, "whoami")
        if not isinstance(session.get("identity"), dict):
            return None
        return session

    def login_url(self, return_to: str) -> str:
        """Hosted login page that resumes at ``return_to`` afterwards."""
        return f"{self.base_url}/self-service/login/browser?{urlencode({'return_to': return_to})}"

    async def logout(self, cookie_header: str) -> None:
        """Invalidate the session behind ``cookie_header``."""
        response = await self._request(
            "GET",
            "/self-service/logout/browser",
            operation="logout_flow",
            headers={"Cookie": cookie_header, "Accept": "application/json"},
        )
        flow = self._json(response, "logout_flow")
        logout_token = flow.get("logout_token")
        if not logout_token:
            self.logger.warning("Logout flow returned no token")
            return

        await self._request(
            "GET",
            "/self-service/logout",
            operation="logout",
            params={"token": logout_token},
            headers={"Cookie": cookie_header, "Accept": "application/json"},
        )

    async def request_recovery(self, email: str) -> None:
        """Start a recovery flow and submit ``email`` for a recovery code."""
        await self._submit_code_flow("recovery", email)

    async def request_verification(self, email: str) -> None:
        """Start a verification flow and submit ``email`` for a verification code."""
        await self._submit_code_flow("verification", email)

    async def _submit_code_flow(self, kind: str, email: str) -> None:
        response = await self._request(
            "GET",
            f"/self-service/{kind}/api",
            operation=f"{kind}_flow",
            headers={"Accept": "application/json"},
        )
        flow = self._json(response, f"{kind}_flow")
        flow_id = flow.get("id")
        if not flow_id:
            self.logger.warning("Self-service flow returned no id", flow=kind)
            return

        # 400 answers carry the flow with form errors; the browser never sees them
        await self._request(
            "POST",
            f"/self-service/{kind}",
            operation=f"{kind}_submit",
            accept=(400,),
            params={"flow": flow_id},
            json={"email": email, "method": "code"},
            headers={"Accept": "application/json"},
        )

    async def unlink_totp(self, cookie_header: str) -> bool:
        """Remove the TOTP credential of the session behind ``cookie_header``.

        Runs a browser settings flow. Returns ``False`` when the identity has
        no TOTP credential to remove.
        """
        headers = {"Cookie": cookie_header, "Accept": "application/json"}
        response = await self._request(
            "GET",
            "/self-service/settings/browser",
            operation="settings_flow",
            headers=headers,
        )
        flow = self._json(response, "settings_flow")
        flow_id = flow.get("id")
        csrf_token = _node_value(flow, "csrf_token")
        if not flow_id or not csrf_token:
            raise UpstreamUnavailableError(
                self.service,
                details={"operation": "settings_flow", "error": "incomplete settings flow"}
            )
        if not _has_totp_unlink(flow):
            return False

        # 400 answers carry the flow; the unlink failed if the node is still offered
        response = await self._request(
            "POST",
            "/self-service/settings",
            operation="settings_submit",
            accept=(400,),
            params={"flow": flow_id},
            json={"method": "totp", "totp_unlink": True, "csrf_token": csrf_token},
            headers=headers,
        )
        if response.status_code == 400 and _has_totp_unlink(self._json(response, "settings_submit")):
            self.logger.error("TOTP unlink rejected", flow_id=flow_id)
            raise UpstreamUnavailableError(
                self.service,
                "Unable to remove two-factor authentication",
                status_message="Failed to disable 2FA",
                upstream_status=400,
                details={"operation": "settings_submit"}
            )
        return True


def _ui_nodes(flow: Dict[str, Any]) -> List[Dict[str, Any]]:
    ui = flow.get("ui")
    nodes = ui.get("nodes") if isinstance(ui, dict) else None
    return [node for node in nodes or [] if isinstance(node, dict)]


def _attributes(node: Dict[str, Any]) -> Dict[str, Any]:
    attributes = node.get("attributes")
    return attributes if isinstance(attributes, dict) else {}


def _node_value(flow: Dict[str, Any], name: str) -> Optional[str]:
    for node in _ui_nodes(flow):
        attributes = _attributes(node)
        if attributes.get("name") == name and isinstance(attributes.get("value"), str):
            return attributes["value"]
    return None


def _has_totp_unlink(flow: Dict[str, Any]) -> bool:
    return any(
        node.get("group") == "totp" and _attributes(node).get("name") == "totp_unlink"
        for node in _ui_nodes(flow)
    )
