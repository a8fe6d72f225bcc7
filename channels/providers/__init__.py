"""HTTP clients for the delivery providers behind each channel."""
from channels.providers.sendgrid_client import SendGridClient
from channels.providers.twilio_sms import TwilioSMSClient

__all__ = ["SendGridClient", "TwilioSMSClient"]
