# applymail/metrics.py
from __future__ import annotations
from prometheus_client import Counter, Histogram, generate_latest, REGISTRY

# Outbound mail
MAILS_SENT_TOTAL = Counter(
    "applymail_mails_sent_total",
    "Messages handed to the SMTP transport",
    ["mode", "outcome"]  # ethereal|smtp, ok|error
)

SEND_LATENCY_SECONDS = Histogram(
    "applymail_send_latency_seconds",
    "Time spent in a single SMTP send",
    ["mode"]
)

# Transporter lifecycle
TRANSPORT_VERIFY_TOTAL = Counter(
    "applymail_transport_verify_total",
    "Transport verification handshakes",
    ["mode", "outcome"]  # ok|error
)

def render_prometheus() -> bytes:
    """
    Exposition payload for whichever HTTP layer hosts the mailer.
    """
    return generate_latest(REGISTRY)
