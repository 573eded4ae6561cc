"""stamphog.inputs package

Adapters that talk to external sources and translate their payloads into the
plain values the ingestion pipeline works with.

Modules
-------
* slack – Slack Web API access (history, thread replies, user directory)."""
