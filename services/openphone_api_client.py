"""
OpenPhone API Client

Thin HTTP client used by the journey messaging gateway to send SMS.
Handles authentication, rate limiting and transient server errors.
"""

import time
from typing import Dict, Any, Optional
import requests
from flask import current_app
from logging_config import get_logger

logger = get_logger(__name__)


class OpenPhoneAPIError(Exception):
    """The OpenPhone API refused a request or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OpenPhoneAPIClient:
    """Client for the OpenPhone messages endpoint"""

    def __init__(self, api_key: Optional[str] = None, base_url: str = "https://api.openphone.com/v1",
                 max_retries: int = 3, retry_delay: float = 1, sleep=time.sleep):
        """
        Initialize OpenPhone API client.

        Args:
            api_key: OpenPhone API key (read from app config when omitted)
            base_url: Base URL for OpenPhone API
            max_retries: Retries for 429, timeouts and 5xx responses
            retry_delay: Initial backoff in seconds, doubled per retry
        """
        self.api_key = api_key or current_app.config.get('OPENPHONE_API_KEY')
        self.base_url = base_url
        self.timeout = (5, 30)  # Connection timeout, read timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

        if not self.api_key:
            raise ValueError("OpenPhone API key not configured")

    def _backoff(self, retry_count: int) -> None:
        self._sleep(self.retry_delay * (2 ** retry_count))

    def _make_request(self, method: str, endpoint: str, json_data: Optional[Dict] = None,
                      retry_count: int = 0) -> Dict[str, Any]:
        """
        Make HTTP request to OpenPhone API with retry logic.

        Raises:
            OpenPhoneAPIError: On API errors after retries are exhausted
        """
        url = f"{self.base_url}/{endpoint}"
        headers = {
            "Authorization": self.api_key,
            "Content-Type": "application/json"
        }

        try:
            logger.debug("OpenPhone request", method=method, endpoint=endpoint, retry_count=retry_count)
            response = requests.request(
                method=method,
                url=url,
                headers=headers,
                json=json_data,
                timeout=self.timeout,
            )

            if response.status_code == 429:
                if retry_count < self.max_retries:
                    logger.warning("OpenPhone rate limited, backing off", retry_count=retry_count)
                    self._backoff(retry_count)
                    return self._make_request(method, endpoint, json_data, retry_count + 1)
                raise OpenPhoneAPIError(f"Rate limit exceeded after {self.max_retries} retries", 429)

            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout as e:
            logger.error("OpenPhone request timeout", endpoint=endpoint, retry_count=retry_count)
            if retry_count < self.max_retries:
                self._backoff(retry_count)
                return self._make_request(method, endpoint, json_data, retry_count + 1)
            raise OpenPhoneAPIError(f"Request timeout after {self.max_retries} retries: {e}")

        except requests.exceptions.RequestException as e:
            status_code = getattr(getattr(e, 'response', None), 'status_code', None)
            logger.error("OpenPhone request failed", endpoint=endpoint, error=str(e),
                         status_code=status_code)
            if retry_count < self.max_retries and (status_code or 500) >= 500:
                self._backoff(retry_count)
                return self._make_request(method, endpoint, json_data, retry_count + 1)
            raise OpenPhoneAPIError(f"API request failed: {e}", status_code)

    def send_message(self, to_number: str, from_number: str, body: str) -> Dict[str, Any]:
        """
        Send an SMS.

        Args:
            to_number: Destination in E.164 form
            from_number: OpenPhone number id or E.164 number to send from
            body: Message text

        Returns:
            The created message (``data`` envelope unwrapped)
        """
        payload = {"content": body, "from": from_number, "to": [to_number]}
        response = self._make_request("POST", "messages", json_data=payload)
        return response.get('data', response)
