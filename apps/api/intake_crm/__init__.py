"""Legal intake CRM API."""
