"""
Placeholder substitution for SMS bodies, webhook payloads and voice scripts.

Placeholders look like ``{{firstName}}`` or ``{{contact.firstName}}`` and are
matched case-insensitively. Unknown placeholders are left in place.
"""

import re
from typing import Any, Dict, Optional
from urllib.parse import quote

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*([A-Za-z0-9_.]+)\s*\}\}')


def contact_variables(contact, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Standard variables for a contact, with custom attributes merged in.

    Attributes never override the built-in names.
    """
    variables: Dict[str, Any] = {}
    attributes = getattr(contact, 'contact_metadata', None) or {}
    if isinstance(attributes, dict):
        for key, value in attributes.items():
            if isinstance(value, (str, int, float, bool)):
                variables[key] = value

    variables.update({
        'contactId': contact.id,
        'firstName': contact.first_name or '',
        'lastName': contact.last_name or '',
        'fullName': contact.full_name or 'Contact',
        'phoneNumber': contact.phone or '',
        'email': contact.email or '',
        'leadStatus': contact.lead_status or '',
    })
    if extra:
        variables.update(extra)
    return variables


def _lookup(variables: Dict[str, Any], name: str):
    if name.lower().startswith('contact.'):
        name = name[len('contact.'):]
    if name in variables:
        return True, variables[name]
    lowered = name.lower()
    for key, value in variables.items():
        if key.lower() == lowered:
            return True, value
    return False, None


def substitute(text: Optional[str], variables: Dict[str, Any], url_encode: bool = False) -> str:
    """
    Replace ``{{name}}`` placeholders in ``text``.

    Args:
        text: Template text
        variables: Name to value mapping
        url_encode: Percent-encode substituted values (for URLs)
    """
    if not text:
        return text or ''

    def replace(match):
        found, value = _lookup(variables, match.group(1))
        if not found:
            return match.group(0)
        value = '' if value is None else str(value)
        return quote(value, safe='') if url_encode else value

    return PLACEHOLDER_PATTERN.sub(replace, text)


def substitute_structure(data: Any, variables: Dict[str, Any]) -> Any:
    """Recursively substitute placeholders in every string of a JSON-like value"""
    if isinstance(data, str):
        return substitute(data, variables)
    if isinstance(data, dict):
        return {key: substitute_structure(value, variables) for key, value in data.items()}
    if isinstance(data, list):
        return [substitute_structure(item, variables) for item in data]
    return data


def has_placeholder(text: Optional[str], name: str) -> bool:
    if not text:
        return False
    return any(match.group(1).lower() == name.lower() for match in PLACEHOLDER_PATTERN.finditer(text))
