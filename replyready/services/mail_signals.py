"""Deterministic header signals for the safety gate and lead-email selection."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from replyready.services.mail_envelope import MailEnvelope

# Sensitive subject topics (case-insensitive, German and English).
SENSITIVE_SUBJECT_KEYWORDS = (
    "password",
    "passwort",
    "security",
    "sicherheit",
    "invoice",
    "rechnung",
    "subscription",
    "abonnement",
    "kündigung",
    "mahnung",
    "payment",
    "zahlung",
)

NO_REPLY_PATTERNS = ("no-reply", "noreply", "do-not-reply", "donotreply")

PORTAL_NEEDLES = (
    "immobilienscout24",
    "immoscout24",
    "immowelt",
    "immonet",
    "kleinanzeigen",
    "funda",
    "pararius",
    "idealista",
    "rightmove",
    "zoopla",
    "scout24",
)

PORTAL_SENDER_DOMAINS = (
    "immobilienscout24.de",
    "immoscout24.de",
    "scout24.com",
    "immowelt.de",
    "immonet.de",
    "kleinanzeigen.de",
    "funda.nl",
    "pararius.com",
    "idealista.com",
    "rightmove.co.uk",
    "zoopla.co.uk",
)

PORTAL_REPLY_RELAY_DOMAINS = (
    "reply.immobilienscout24.de",
    "reply.immoscout24.de",
    "reply.scout24.com",
    "reply.immowelt.de",
    "reply.immonet.de",
)

_MAILER_DAEMON_SENDERS = ("mailer-daemon", "postmaster")
_BOUNCE_SUBJECTS = ("delivery status notification", "undelivered", "mail delivery")


@dataclass(frozen=True)
class MailSignals:
    has_list_unsubscribe: bool = False
    has_list_id: bool = False
    precedence_bulk: bool = False
    auto_submitted: bool = False
    is_no_reply: bool = False
    is_mailer_daemon: bool = False
    is_portal_relay: bool = False
    sensitive_subject: bool = False

    @property
    def bulk_or_no_reply(self) -> bool:
        return (
            self.has_list_unsubscribe
            or self.has_list_id
            or self.precedence_bulk
            or self.auto_submitted
            or self.is_no_reply
        )

    def as_dict(self) -> dict[str, bool]:
        return asdict(self)


def email_domain(address: str | None) -> str:
    value = (address or "").strip().lower()
    _, _, domain = value.rpartition("@")
    return domain if "@" in value else ""


def domain_is_one_of(domain: str, allowed: tuple[str, ...]) -> bool:
    return bool(domain) and any(domain == item or domain.endswith(f".{item}") for item in allowed)


def is_no_reply_address(address: str | None) -> bool:
    value = (address or "").lower()
    return any(pattern in value for pattern in NO_REPLY_PATTERNS)


def looks_like_portal(*values: str | None) -> bool:
    haystack = " ".join(value.lower() for value in values if value)
    return any(needle in haystack for needle in PORTAL_NEEDLES)


def has_sensitive_subject(subject: str | None) -> bool:
    value = (subject or "").lower()
    return any(keyword in value for keyword in SENSITIVE_SUBJECT_KEYWORDS)


def is_portal_reply_relay(from_address: str | None, reply_to: str | None) -> bool:
    """
    Portal mail sent from no-reply with a Reply-To relay that forwards to the
    requester. The relay must be a usable, distinct, non-no-reply address.
    """
    if not reply_to or "@" not in reply_to or is_no_reply_address(reply_to):
        return False
    if from_address and from_address.lower() == reply_to.lower():
        return False
    if not looks_like_portal(from_address, reply_to):
        return False

    reply_domain = email_domain(reply_to)
    if domain_is_one_of(reply_domain, PORTAL_REPLY_RELAY_DOMAINS):
        return True
    relay_like = reply_domain.startswith("reply.") or "reply" in reply_domain
    return relay_like


def compute_signals(envelope: MailEnvelope) -> MailSignals:
    from_address = envelope.from_address or ""
    reply_to = envelope.reply_to_address
    precedence = envelope.header("precedence").strip().lower()
    auto_submitted = envelope.header("auto-submitted").strip().lower()
    subject = envelope.subject.lower()

    return MailSignals(
        has_list_unsubscribe=bool(envelope.header("list-unsubscribe").strip()),
        has_list_id=bool(envelope.header("list-id").strip()),
        precedence_bulk=precedence in {"bulk", "list", "junk"},
        auto_submitted=bool(auto_submitted) and auto_submitted != "no",
        is_no_reply=is_no_reply_address(from_address),
        is_mailer_daemon=(
            any(sender in from_address for sender in _MAILER_DAEMON_SENDERS)
            or any(marker in subject for marker in _BOUNCE_SUBJECTS)
        ),
        is_portal_relay=is_portal_reply_relay(from_address, reply_to),
        sensitive_subject=has_sensitive_subject(envelope.subject),
    )
