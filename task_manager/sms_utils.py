import logging

from . import models

logger = logging.getLogger(__name__)


def send_sms_console(message: models.SmsMessage):
    logger.info("SMS %s %s -> %s\n%s", message.message_id, message.sender_number,
                message.recipient_number, message.message_content)


def send_sms(message: models.SmsMessage):
    # operators expose no delivery API here; hand-off is logged only
    send_sms_console(message)
