"""
Email notification utilities for OU Group Sync.

This module sends email notifications for fatal sync failures and run
summaries.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Mapping, Optional
from datetime import datetime

from ou_group_sync.models import SyncReport

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10


def send_email(subject: str, body: str, config: Mapping[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Mapping[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a fatal sync failure.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "OU Group Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "No groups were created after this failure.",
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from OU Group Sync."
    ])

    return send_email(f"OU Group Sync Alert: {title}", '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_run_summary(report: SyncReport, config: Mapping[str, Any]) -> bool:
    """
    Send a run summary.

    Runs with per-unit failures are reported when ``email_on_failure`` is set,
    clean runs when ``email_on_success`` is set.

    Returns:
        True if notification sent successfully
    """
    if report.has_failures:
        if not config.get('email_on_failure', True):
            logger.debug("Failure email notifications disabled")
            return False
        subject = "OU Group Sync: Completed With Errors"
        outcome = "Sync completed, but some organizational units failed."
    else:
        if not config.get('email_on_success', False):
            logger.debug("Success email notifications disabled")
            return False
        subject = "OU Group Sync: Successful Completion"
        outcome = "Sync completed successfully!"

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "OU Group Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        outcome,
        "",
        "Statistics:",
        f"  Total runtime: {format_runtime(report.runtime_seconds)}",
        f"  Organizational units found: {report.units_found}",
        f"  Groups created: {report.created}",
        f"  Groups already present: {report.skipped_existing}",
        f"  Lookup failures: {report.query_failed}",
        f"  Creation failures: {report.creation_failed}",
        f"  Mail nickname collisions: {report.nickname_collisions}",
        ""
    ]

    if report.errors:
        body_lines.append("Error Details:")
        for i, error in enumerate(report.errors[:MAX_LISTED_ERRORS], 1):
            body_lines.append(f"  {i}. {error}")
        if len(report.errors) > MAX_LISTED_ERRORS:
            body_lines.append(f"  ... and {len(report.errors) - MAX_LISTED_ERRORS} more errors")
        body_lines.append("")

    body_lines.append("This is an automated message from OU Group Sync.")

    return send_email(subject, '\n'.join(body_lines), config)


def send_test_notification(config: Mapping[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from OU Group Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("OU Group Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
