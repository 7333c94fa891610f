"""Gmail access: payload parser, credential refresh and the mail gateway.

Heavy imports are deferred. Use explicit imports:
    from mailtriage.gmail.gateway import GmailGateway
    from mailtriage.gmail.auth import CredentialRefresher
    from mailtriage.gmail.parser import parse_message
"""


def __getattr__(name):
    """Lazy imports for classes that pull in the Google client libraries."""
    if name in ("MailGateway", "GmailGateway"):
        from mailtriage.gmail import gateway
        return getattr(gateway, name)
    if name == "CredentialRefresher":
        from mailtriage.gmail.auth import CredentialRefresher
        return CredentialRefresher
    if name in ("parse_message", "prepare_body"):
        from mailtriage.gmail import parser
        return getattr(parser, name)
    raise AttributeError(f"module 'mailtriage.gmail' has no attribute {name!r}")


__all__ = [
    "MailGateway",
    "GmailGateway",
    "CredentialRefresher",
    "parse_message",
    "prepare_body",
]
