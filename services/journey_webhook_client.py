"""
JourneyWebhookClient - executes EXECUTE_WEBHOOK nodes.

Config keys (inline or merged over a StoredWebhook):
    webhookId, webhookUrl, webhookMethod, webhookHeaders, webhookBody,
    webhookRetries, webhookRetryDelay (ms), webhookTimeout (ms),
    webhookResponseHandling: {extractFields: {attribute: response.path}, errorField}
"""

import json
import time
from typing import Any, Dict, Optional

import requests

from logging_config import get_logger, performance_logger
from repositories.contact_repository import ContactRepository
from repositories.stored_webhook_repository import StoredWebhookRepository
from services.journey_collaborators import CollaboratorError
from services.journey_exceptions import JourneyConfigurationError, WebhookExecutionError
from services.template_variables import contact_variables, substitute, substitute_structure

logger = get_logger(__name__)


def extract_path(data: Any, path: str) -> Any:
    """Follow a dotted path (``data.items.0.id``) through dicts and lists"""
    current = data
    for part in path.split('.'):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def _config_int(config: Dict[str, Any], key: str, default: int) -> int:
    """Read a non-negative integer setting; missing or null falls back to ``default``"""
    value = config.get(key)
    if value is None or value == '':
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise JourneyConfigurationError(f"Webhook setting {key} must be a whole number, got {value!r}")
    if parsed < 0:
        raise JourneyConfigurationError(f"Webhook setting {key} must not be negative, got {parsed}")
    return parsed


class JourneyWebhookClient:

    def __init__(self, stored_webhook_repository: StoredWebhookRepository,
                 contact_repository: ContactRepository,
                 default_timeout_ms: int = 30000, default_retries: int = 3,
                 default_retry_delay_ms: int = 1000, sleep=time.sleep):
        self.stored_webhook_repository = stored_webhook_repository
        self.contact_repository = contact_repository
        self.default_timeout_ms = default_timeout_ms
        self.default_retries = default_retries
        self.default_retry_delay_ms = default_retry_delay_ms
        self._sleep = sleep

    def build_request(self, tenant_id: str, config: Dict[str, Any], contact, journey) -> Dict[str, Any]:
        """
        Resolve url / method / headers / body and substitute variables.

        Raises:
            JourneyConfigurationError: No URL configured
            CollaboratorError: The referenced stored webhook doesn't exist
        """
        url = config.get('webhookUrl')
        method = config.get('webhookMethod')
        headers = dict(config.get('webhookHeaders') or {})
        body = config.get('webhookBody')

        if config.get('webhookId'):
            stored = self.stored_webhook_repository.get_for_tenant(config['webhookId'], tenant_id)
            if stored is None:
                raise CollaboratorError(f"Webhook not found: {config['webhookId']}")
            url = stored.url
            method = method or stored.method
            headers = {**(stored.headers or {}), **headers}
            if body is None:
                body = stored.body

        if not url:
            raise JourneyConfigurationError("Webhook URL is required")

        variables = contact_variables(contact, {
            'journeyId': journey.id if journey else None,
            'journeyName': journey.name if journey else None,
            'tenantId': tenant_id,
        })

        if isinstance(body, str):
            rendered = substitute(body, variables)
            try:
                body = json.loads(rendered)
            except ValueError:
                body = rendered
        else:
            body = substitute_structure(body, variables)

        return {
            'url': substitute(url, variables, url_encode=True),
            'method': (method or 'POST').upper(),
            'headers': {key: substitute(str(value), variables) for key, value in headers.items()},
            'body': body,
        }

    def execute(self, tenant_id: str, config: Dict[str, Any], contact, journey) -> Dict[str, Any]:
        """
        Call the webhook with retries and apply response handling.

        Connection errors and 5xx responses are retried with a linear backoff;
        other 4xx responses fail straight away.

        Returns:
            ``{'statusCode', 'response', 'extracted', 'attempts'}``

        Raises:
            WebhookExecutionError: Retries exhausted, 4xx, or the configured
                error field is present in the response
            JourneyConfigurationError: A retry, delay or timeout setting is not a
                non-negative whole number
        """
        request = self.build_request(tenant_id, config, contact, journey)
        retries = _config_int(config, 'webhookRetries', self.default_retries)
        delay_ms = _config_int(config, 'webhookRetryDelay', self.default_retry_delay_ms)
        timeout = _config_int(config, 'webhookTimeout', self.default_timeout_ms) / 1000.0

        last_error: Optional[str] = None
        status_code = None
        for attempt in range(retries + 1):
            try:
                started = time.monotonic()
                response = requests.request(
                    request['method'],
                    request['url'],
                    headers=request['headers'],
                    json=request['body'] if not isinstance(request['body'], str) else None,
                    data=request['body'] if isinstance(request['body'], str) else None,
                    timeout=timeout,
                )
                status_code = response.status_code
                performance_logger.log_api_call('webhook', request['url'],
                                                round((time.monotonic() - started) * 1000, 1), status_code)
                if status_code < 400:
                    payload = self._parse_body(response)
                    extracted = self._handle_response(config, payload, contact)
                    logger.info("Webhook executed", url=request['url'], status_code=status_code,
                                attempts=attempt + 1)
                    return {
                        'statusCode': status_code,
                        'response': payload,
                        'extracted': extracted,
                        'attempts': attempt + 1,
                    }
                last_error = f"HTTP {status_code}"
                if status_code < 500:
                    raise WebhookExecutionError(
                        f"Webhook rejected with {last_error}", status_code, attempt + 1
                    )
            except requests.exceptions.RequestException as e:
                last_error = str(e)

            logger.warning("Webhook attempt failed", url=request['url'], attempt=attempt + 1,
                           error=last_error)
            if attempt < retries:
                self._sleep(delay_ms * (attempt + 1) / 1000.0)

        raise WebhookExecutionError(
            f"Webhook failed after {retries + 1} attempts: {last_error}", status_code, retries + 1
        )

    @staticmethod
    def _parse_body(response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    def _handle_response(self, config: Dict[str, Any], payload: Any, contact) -> Dict[str, Any]:
        handling = config.get('webhookResponseHandling') or {}

        error_field = handling.get('errorField')
        if error_field and isinstance(payload, (dict, list)):
            error_value = extract_path(payload, error_field)
            if error_value:
                raise WebhookExecutionError(f"Webhook returned error: {error_value}")

        extracted = {}
        for attribute, path in (handling.get('extractFields') or {}).items():
            value = extract_path(payload, path) if isinstance(payload, (dict, list)) else None
            if value is not None:
                extracted[attribute] = value
        if extracted:
            self.contact_repository.merge_attributes(contact, extracted)
        return extracted
