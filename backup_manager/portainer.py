"""
Portainer API client.

All calls are synchronous with a bounded timeout and are never retried here;
callers decide whether a failure is fatal or can be skipped.
"""
import requests

from backup_manager.errors import (
    ApiResponseError,
    ApiUnavailable,
    AuthenticationError,
    NotFoundError,
    StackConflict,
    StackCreateFailed,
)
from backup_manager.stacks import StackRecord, normalize_status
from backup_manager.utils import get_logger

logger = get_logger(__name__)


def _env_list(value):
    """Portainer sends `Env` as null for stacks without variables."""
    if not isinstance(value, list):
        return []
    return [dict(v) for v in value if isinstance(v, dict)]


class PortainerClient:
    """Thin wrapper around the Portainer REST API."""

    def __init__(self, api_url, timeout=10.0, endpoint_id=1, session=None):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.endpoint_id = endpoint_id
        self.session = session or requests.Session()
        self.token = None

    @classmethod
    def from_config(cls, config, credentials=None, session=None):
        api_url = (credentials.api_url if credentials and credentials.api_url else config.api_url)
        return cls(api_url, timeout=config.api_timeout, endpoint_id=config.endpoint_id, session=session)

    def _url(self, path):
        return f"{self.api_url}/{path.lstrip('/')}"

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f"Bearer {self.token}"
        return headers

    def _request(self, method, path, **kwargs):
        url = self._url(path)
        try:
            return self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ApiUnavailable(f"Portainer API timed out: {method} {path}", details={'url': url, 'error': str(e)})
        except requests.exceptions.RequestException as e:
            raise ApiUnavailable(f"Portainer API unreachable: {method} {path}", details={'url': url, 'error': str(e)})

    @staticmethod
    def _json(response, what):
        """Decode a JSON body, treating empty or non-JSON bodies as errors."""
        if not response.content or not response.content.strip():
            raise ApiResponseError(f"Empty response for {what}", details={'status': response.status_code})
        try:
            return response.json()
        except ValueError:
            raise ApiResponseError(f"Malformed JSON response for {what}",
                                   details={'status': response.status_code, 'body': response.text[:200]})

    @staticmethod
    def _message(response):
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return body.get('message') or body.get('details') or str(body)
        return str(body)

    def _require_token(self):
        if not self.token:
            raise AuthenticationError("Not authenticated; call authenticate() first")

    def authenticate(self, username, password):
        """Exchange the admin login for a JWT session token."""
        response = self._request('POST', '/auth', json={'Username': username, 'Password': password})
        if response.status_code in (401, 403, 422):
            raise AuthenticationError("Portainer rejected the credentials",
                                      details={'status': response.status_code, 'message': self._message(response)})
        if response.status_code >= 400:
            raise ApiResponseError(f"Authentication request failed with HTTP {response.status_code}",
                                   details={'message': self._message(response)})
        body = self._json(response, 'authentication')
        token = body.get('jwt') if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError("Authentication response carried no token")
        self.token = token
        logger.debug("Authenticated against %s", self.api_url)
        return token

    def get_stack_file(self, stack_id):
        """Return the stack file endpoint's body exactly as Portainer sent it."""
        self._require_token()
        response = self._request('GET', f"/stacks/{stack_id}/file")
        if response.status_code == 404:
            raise NotFoundError(f"Stack {stack_id} not found", details={'id': stack_id})
        if response.status_code >= 400:
            raise ApiResponseError(f"Fetching stack file {stack_id} failed with HTTP {response.status_code}",
                                   details={'message': self._message(response)})
        # Validate it is JSON but keep the original text
        self._json(response, f"stack file {stack_id}")
        return response.text

    def list_stacks(self, endpoint_id=None, with_manifests=True):
        """Return StackRecords in Portainer's enumeration order.

        The list endpoint does not include compose content, so one
        follow-up request per stack fetches it. A failed follow-up leaves that
        stack without a manifest and records the reason on the record.
        """
        self._require_token()
        response = self._request('GET', '/stacks')
        if response.status_code in (401, 403):
            raise AuthenticationError("Session token rejected while listing stacks")
        if response.status_code >= 400:
            raise ApiResponseError(f"Listing stacks failed with HTTP {response.status_code}",
                                   details={'message': self._message(response)})
        body = self._json(response, 'stack list')
        if body is None:
            body = []
        if not isinstance(body, list):
            raise ApiResponseError("Stack list response is not a list", details={'type': type(body).__name__})

        records = []
        for item in body:
            if not isinstance(item, dict):
                raise ApiResponseError("Stack list entry is not an object")
            if endpoint_id is not None and item.get('EndpointId') not in (None, endpoint_id):
                continue
            stack_id = item.get('Id')
            name = item.get('Name')
            content = None
            warning = None
            if with_manifests:
                inline = item.get('StackFileContent')
                if isinstance(inline, str):
                    content = inline
                else:
                    try:
                        content = self.get_stack_file(stack_id)
                    except (ApiUnavailable, ApiResponseError, NotFoundError) as e:
                        warning = str(e)
                        logger.warning("Could not fetch compose file for stack %s (%s): %s", name, stack_id, e)
            records.append(StackRecord(
                id=stack_id,
                name=name,
                status=normalize_status(item.get('Status')),
                manifest_content=content,
                capture_warning=warning,
                env=_env_list(item.get('Env')),
            ))
        return records

    def find_stack(self, name, endpoint_id=None):
        """Return the StackRecord with `name` or None (no manifest fetched)."""
        for record in self.list_stacks(endpoint_id=endpoint_id, with_manifests=False):
            if record.name == name:
                return record
        return None

    def create_stack(self, name, manifest_content, endpoint_id=None, env=None):
        """Create a standalone compose stack from a manifest string."""
        self._require_token()
        endpoint = endpoint_id if endpoint_id is not None else self.endpoint_id
        payload = {
            'Name': name,
            'StackFileContent': manifest_content,
            'Env': list(env or []),
        }
        response = self._request('POST', '/stacks/create/standalone/string',
                                 params={'endpointId': endpoint}, json=payload)
        message = self._message(response) if response.status_code >= 400 else ''
        if response.status_code == 409 or 'already exists' in str(message).lower():
            raise StackConflict(f"Stack '{name}' already exists", details={'endpoint': endpoint})
        if response.status_code in (401, 403):
            raise AuthenticationError("Session token rejected while creating stack", details={'name': name})
        if response.status_code >= 400:
            raise StackCreateFailed(f"Portainer rejected stack '{name}' (HTTP {response.status_code})",
                                    details={'message': message})
        body = self._json(response, f"create stack {name}")
        if not isinstance(body, dict) or body.get('Id') is None:
            raise StackCreateFailed(f"Create response for '{name}' carried no stack id", details={'body': str(body)[:200]})
        logger.info("Created stack '%s' (ID: %s)", name, body.get('Id'))
        return StackRecord(
            id=body.get('Id'),
            name=body.get('Name') or name,
            status=normalize_status(body.get('Status', 1)),
            manifest_content=manifest_content,
            env=list(env or []),
        )

    def delete_stack(self, stack_id, endpoint_id=None):
        """Delete a stack; raises NotFoundError if it does not exist."""
        self._require_token()
        endpoint = endpoint_id if endpoint_id is not None else self.endpoint_id
        response = self._request('DELETE', f"/stacks/{stack_id}", params={'endpointId': endpoint})
        if response.status_code == 404:
            raise NotFoundError(f"Stack {stack_id} not found", details={'endpoint': endpoint})
        if response.status_code in (401, 403):
            raise AuthenticationError("Session token rejected while deleting stack", details={'id': stack_id})
        if response.status_code >= 400:
            raise ApiResponseError(f"Deleting stack {stack_id} failed with HTTP {response.status_code}",
                                   details={'message': self._message(response)})
        logger.info("Deleted stack %s", stack_id)
        return True

    def _stack_action(self, action, stack_id, endpoint_id=None):
        self._require_token()
        endpoint = endpoint_id if endpoint_id is not None else self.endpoint_id
        response = self._request('POST', f"/stacks/{stack_id}/{action}", params={'endpointId': endpoint})
        if response.status_code == 404:
            raise NotFoundError(f"Stack {stack_id} not found", details={'endpoint': endpoint})
        if response.status_code in (401, 403):
            raise AuthenticationError(f"Session token rejected while trying to {action} stack",
                                      details={'id': stack_id})
        if response.status_code >= 400:
            raise ApiResponseError(f"Trying to {action} stack {stack_id} failed with HTTP {response.status_code}",
                                   details={'message': self._message(response)})
        logger.info("Stack %s: %s requested", stack_id, action)
        return True

    def stop_stack(self, stack_id, endpoint_id=None):
        """Stop every container of a stack; the stack becomes Inactive."""
        return self._stack_action('stop', stack_id, endpoint_id)

    def start_stack(self, stack_id, endpoint_id=None):
        """Start a stopped stack again."""
        return self._stack_action('start', stack_id, endpoint_id)
