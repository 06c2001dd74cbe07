"""
Budget threshold notification emails.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from jinja2 import Environment

from account_pool.budget import determine_threshold_percentile
from account_pool.models import Lease
from account_pool.settings import load_template

logger = logging.getLogger(__name__)

_html_env = Environment(autoescape=True)
_text_env = Environment(autoescape=False)


@dataclass
class RenderedEmail:
    subject: str
    body_html: str
    body_text: str


def render_notification(
    lease: Lease,
    actual_spend: float,
    threshold_percentile: float,
    template_html: str,
    template_text: str,
    template_subject: str,
) -> RenderedEmail:
    """Render subject and bodies for a lease that crossed a budget threshold."""
    data = {
        "Lease": lease,
        "ActualSpend": actual_spend,
        "IsOverBudget": actual_spend >= (lease.budget_amount or 0.0),
        "ThresholdPercentile": int(threshold_percentile),
    }
    return RenderedEmail(
        subject=_text_env.from_string(template_subject).render(data).strip(),
        body_html=_html_env.from_string(template_html).render(data).strip(),
        body_text=_text_env.from_string(template_text).render(data).strip(),
    )


class BudgetNotifier:
    """Emails lease owners when their spend crosses a configured threshold."""

    def __init__(
        self,
        email_sender: Any,
        from_address: Optional[str],
        bcc_addresses: list[str],
        threshold_percentiles: list[float],
        principal_budget_amount: float,
        template_html: Optional[str] = None,
        template_text: Optional[str] = None,
        template_subject: Optional[str] = None,
    ):
        self.email_sender = email_sender
        self.from_address = from_address
        self.bcc_addresses = list(bcc_addresses)
        self.threshold_percentiles = list(threshold_percentiles)
        self.principal_budget_amount = principal_budget_amount
        self.template_html = template_html or load_template("budget_notification.html.j2")
        self.template_text = template_text or load_template("budget_notification.txt.j2")
        self.template_subject = template_subject or load_template("budget_notification_subject.j2")

    def compose(
        self, lease: Lease, actual_spend: float, principal_spend: float
    ) -> Optional[RenderedEmail]:
        """Rendered email for the highest crossed threshold, or None when nothing is due."""
        lease_threshold = determine_threshold_percentile(
            self.threshold_percentiles, lease.budget_amount or 0.0, actual_spend
        )
        principal_threshold = determine_threshold_percentile(
            self.threshold_percentiles, self.principal_budget_amount, principal_spend
        )
        if lease_threshold == 0 and principal_threshold == 0:
            return None

        if not lease.budget_notification_emails and not self.bcc_addresses:
            logger.info(
                "Skipping budget notification emails: no addresses were provided for lease %s", lease
            )
            return None

        # Lease-level threshold takes precedence
        threshold = lease_threshold if lease_threshold > 0 else principal_threshold
        logger.info("Budget notification threshold hit at %.0f%% for lease %s", threshold, lease)

        return render_notification(
            lease,
            actual_spend,
            threshold,
            self.template_html,
            self.template_text,
            self.template_subject,
        )

    def send_budget_notification(
        self, lease: Lease, actual_spend: float, principal_spend: float
    ) -> bool:
        """Send the threshold email if one is due. Returns True when an email went out."""
        email = self.compose(lease, actual_spend, principal_spend)
        if email is None:
            return False

        logger.info(
            "Sending budget notification emails for lease %s to %s",
            lease,
            ",".join(lease.budget_notification_emails),
        )
        self.email_sender.send_email(
            from_address=self.from_address,
            to_addresses=lease.budget_notification_emails,
            bcc_addresses=self.bcc_addresses,
            subject=email.subject,
            body_html=email.body_html,
            body_text=email.body_text,
        )
        return True
