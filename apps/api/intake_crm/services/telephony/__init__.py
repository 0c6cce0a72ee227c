"""Telephony provider ingestion: adapters, normalized events and pipeline."""
