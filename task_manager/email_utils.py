import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import config

logger = logging.getLogger(__name__)


def send_email_console(to_email: str, subject: str, body: str):
    logger.info("Email to %s | %s\n%s", to_email, subject, body)


def send_email_smtp(email_to: str, subject: str, body: str):
    msg = MIMEMultipart("alternative")
    msg["From"] = config.SMTP_USER
    msg["To"] = email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(config.SMTP_SERVER, config.SMTP_PORT) as server:
        server.starttls()
        server.login(config.SMTP_USER, config.SMTP_PASSWORD)
        server.sendmail(config.SMTP_USER, email_to, msg.as_string())


def send_email(email_to: str, subject: str, body: str):
    if config.EMAIL_BACKEND == "smtp":
        send_email_smtp(email_to, subject, body)
    else:
        send_email_console(email_to, subject, body)
