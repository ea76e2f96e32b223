import logging
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


DEACTIVATION_SUBJECT = "Your license has been deactivated"

DEACTIVATION_BODY = """Hello,

we could not collect the payment for your subscription, so your license has
been deactivated.

You can review and pay the outstanding invoice here:

{invoice_url}

Your license is reactivated automatically once the payment is confirmed.
"""


def send_deactivation_warning(config: EmailConfig, recipient: str, invoice_url: str) -> bool:
    """Tell an account its license was deactivated and where to pay.

    Args:
        config: Email configuration.
        recipient: Account email address.
        invoice_url: Hosted page of the unpaid invoice.

    Returns:
        True if the email was sent, False if email is disabled.

    Raises:
        MailerError: If email sending fails.
    """
    if not config.enabled:
        logger.info("Email disabled, not sending deactivation warning to %s", recipient)
        return False

    message = EmailMessage()
    message["Subject"] = DEACTIVATION_SUBJECT
    message["From"] = config.sender
    message["To"] = recipient
    if config.operator_cc:
        message["Cc"] = config.operator_cc
    message.set_content(DEACTIVATION_BODY.format(invoice_url=invoice_url))

    try:
        logger.info("Sending deactivation warning to %s", recipient)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Deactivation warning sent to %s", recipient)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise MailerError(f"Email authentication failed: {e}")

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise MailerError(f"Email recipients refused: {e}")

    except smtplib.SMTPException as e:
        logger.error("SMTP error: %s", e)
        raise MailerError(f"Failed to send email: {e}")

    except (gaierror, timeout) as e:
        logger.error("Network error while sending email: %s", e)
        raise MailerError(f"Network error: could not connect to mail server: {e}")

    except OSError as e:
        logger.error("OS error while sending email: %s", e)
        raise MailerError(f"Failed to send email: {e}")
