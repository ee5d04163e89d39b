"""AI performance report: data prompt + bounded generator/critic loop.

WHAT:
    1. build_data_prompt(): deterministic text block with the snapshot, the
       current and previous period series, churn and optional marketing data
    2. ReportGenerator.run(): draft -> critique -> revise, at most 5 drafts

WHY:
    A single completion often skips sections or writes vague prose. A strict
    critic pass catches that; the attempt cap bounds cost and latency.

FLOW:
    attempt n: generator(temperature 0.7)
               -> last attempt? return draft
               -> critic(temperature 0.3): "APPROVED" -> return draft
               -> "NEEDS_REVISION: ..." -> fold draft + feedback, attempt n+1

Any TextGenError aborts the loop; a half-finished report is never returned.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from subbuddy.exceptions import NoAPIKeyError
from subbuddy.models import (
    FUNNEL_EVENTS,
    TOP_CAMPAIGNS_LIMIT,
    ChartPoint,
    DashboardData,
    MarketingReport,
    ReportChartSet,
)
from subbuddy.services.text_gen_client import Message, TextGenClient
from subbuddy.telemetry import LogFn, app_log
from subbuddy.utils.formatting import fmt_count, fmt_currency, fmt_percent

CATEGORY = "OpenAI"

MAX_ATTEMPTS = 5
GENERATOR_TEMPERATURE = 0.7
CRITIC_TEMPERATURE = 0.3
GENERATOR_MAX_TOKENS = 1500
CRITIC_MAX_TOKENS = 500
TOP_COHORTS_LIMIT = 5

APPROVED = "APPROVED"
_NEEDS_REVISION_PREFIX = re.compile(r"^\s*NEEDS_REVISION:\s*", re.IGNORECASE)

ProgressFn = Callable[[str], None]


GENERATOR_SYSTEM_PROMPT = """\
You are a senior subscription analytics consultant. Your job is to analyse mobile/SaaS \
subscription metrics and write detailed, actionable reports that can be sent directly \
as an e-mail to stakeholders.

Your report MUST include all of the following sections:
1. Executive summary (2-3 sentences)
2. Subscriber metrics — active subscriptions count, change vs previous period (absolute + %)
3. Trial metrics — active trials, trial conversion rate, change vs previous period
4. MRR analysis — current MRR, trend direction, change vs previous period (absolute + %)
5. Revenue breakdown — daily revenue trend, total revenue for the period
6. Churn analysis — estimated churn rate based on subscriber movement data, whether improving or worsening
7. Key observations — 2-3 notable patterns or anomalies (include acquisition and campaign performance when marketing data is supplied)
8. Recommendations — 2-3 specific, actionable next steps

Guidelines:
- Use British English
- Write in a professional but approachable tone
- Always include specific numbers and percentage changes — never use vague language
- Compare current period with the previous period of equal length
- Keep the entire report under 400 words
- Format for plain-text e-mail (no markdown headers, use dashes for bullet lists)
- Do not include a subject line — just the body
- If data for a metric is unavailable, note it explicitly rather than omitting it
- Never describe ad spend as $0 when it is marked "not available"
"""

CRITIC_SYSTEM_PROMPT = """\
You are a strict quality reviewer for subscription analytics reports. Your job is to \
evaluate whether a report meets all quality criteria.

Criteria — the report MUST:
1. Contain specific numbers (not vague statements like "grew" or "increased")
2. Compare current period with the previous period, including percentage changes
3. Cover: subscriber count, trial metrics, MRR, churn rate
4. End with 2-3 actionable recommendations
5. Be formatted as a plain-text e-mail body (no markdown)
6. Stay under 400 words

Your response must be EXACTLY one of:
- "APPROVED" — if all criteria are met
- "NEEDS_REVISION: <specific issues>" — listing what is missing or wrong

Be strict. If even one criterion is not properly addressed, respond with NEEDS_REVISION.
"""


# =============================================================================
# DATA PROMPT
# =============================================================================

def previous_period(start: date, end: date) -> Tuple[date, date]:
    """Window of the same length ending the day before `start`."""
    duration = (end - start).days
    previous_end = start - timedelta(days=1)
    return previous_end - timedelta(days=duration), previous_end


def format_chart_section(title: str, points: Sequence[ChartPoint], decimals: int) -> str:
    if not points:
        return ""
    lines = [f"\n{title}:"]
    for point in points:
        value = "n/a" if point.value is None else f"{point.value:.{decimals}f}"
        lines.append(f"  {point.date or '?'}: {value}")
    return "\n".join(lines) + "\n"


def _chart_sections(charts: ReportChartSet) -> str:
    return "".join(
        [
            format_chart_section("MRR trend", charts.mrr_trend, 2),
            format_chart_section("Subscriber count", charts.subscriber_growth, 0),
            format_chart_section("Daily revenue", charts.revenue_trend, 2),
            format_chart_section("Trial conversion rate (%)", charts.trial_conversions, 1),
            format_chart_section("Subscriber movement (net)", charts.actives_movement, 0),
        ]
    )


_FUNNEL_LABELS = {
    "registrations": ("Registrations", "of installs"),
    "checkouts_initiated": ("Checkouts initiated", "of registrations"),
    "trials_started": ("Trials started", "of installs"),
    "subscriptions": ("Subscriptions", "of trials started"),
    "purchases": ("Purchases", "of installs"),
}

_FUNNEL_RATE_ATTRS = {
    "registrations": "registration_rate",
    "checkouts_initiated": "checkout_rate",
    "trials_started": "trial_start_rate",
    "subscriptions": "trial_to_subscription_rate",
    "purchases": "purchase_rate",
}


def build_marketing_section(report: MarketingReport) -> str:
    """Totals, non-zero funnel steps, top campaigns and cohorts.

    Zero cost means spend was not tracked, so it reads "not available"
    rather than "$0".
    """
    currency = report.currency
    spend_tracked = report.total_cost > 0
    lines = [
        "\n\nMARKETING DATA (attribution):",
        f"- Installs: {fmt_count(report.total_installs)}",
        f"- Ad spend: {fmt_currency(report.total_cost, currency) if spend_tracked else 'not available'}",
        f"- Attributed revenue: {fmt_currency(report.total_revenue, currency)}",
    ]
    if spend_tracked:
        lines.append(f"- Average CPI: {fmt_currency(report.average_cpi, currency)}")
        lines.append(f"- ROAS: {fmt_percent(report.overall_roas)}")

    totals = report.funnel_totals
    rates = report.funnel_rates
    funnel_lines = []
    for attr, _event in FUNNEL_EVENTS:
        if totals[attr] <= 0:
            continue
        label, basis = _FUNNEL_LABELS[attr]
        rate = getattr(rates, _FUNNEL_RATE_ATTRS[attr])
        rate_text = f" ({fmt_percent(rate)} {basis})" if rate is not None else ""
        funnel_lines.append(f"- {label}: {fmt_count(totals[attr])}{rate_text}")
    if funnel_lines:
        lines.append("\nFunnel:")
        lines.extend(funnel_lines)

    campaigns = report.top_campaigns(TOP_CAMPAIGNS_LIMIT)
    if campaigns:
        lines.append(f"\nTop {len(campaigns)} campaigns by installs:")
        for campaign in campaigns:
            parts = [f"{fmt_count(campaign.installs)} installs"]
            if campaign.cost > 0:
                parts.append(f"cost {fmt_currency(campaign.cost, currency)}")
                parts.append(f"CPI {fmt_currency(campaign.cpi, currency)}")
                parts.append(f"ROAS {fmt_percent(campaign.roas)}")
            else:
                parts.append("cost not available")
            parts.append(f"revenue {fmt_currency(campaign.revenue, currency)}")
            if campaign.trials_started:
                parts.append(f"trials {fmt_count(campaign.trials_started)}")
            if campaign.subscriptions:
                parts.append(f"subscriptions {fmt_count(campaign.subscriptions)}")
            lines.append(f"- {campaign.display_name}: " + ", ".join(parts))

    cohorts = report.cohorts[:TOP_COHORTS_LIMIT]
    if cohorts:
        lines.append("\nCohorts:")
        for cohort in cohorts:
            name = f"{cohort.campaign} ({cohort.media_source})" if cohort.media_source else cohort.campaign
            retention = ", ".join(
                f"{label} {fmt_percent(value * 100)}"
                for label, value in (
                    ("D1", cohort.retention_d1),
                    ("D7", cohort.retention_d7),
                    ("D30", cohort.retention_d30),
                )
                if value is not None
            )
            line = (
                f"- {name}: {fmt_count(cohort.users)} users, "
                f"revenue {fmt_currency(cohort.revenue, currency)}, ROI {fmt_percent(cohort.roi)}"
            )
            if retention:
                line += f", retention {retention}"
            lines.append(line)

    return "\n".join(lines) + "\n"


def build_data_prompt(
    project_name: str,
    start: date,
    end: date,
    data: DashboardData,
    current: ReportChartSet,
    previous: ReportChartSet,
    marketing: Optional[MarketingReport] = None,
) -> str:
    start_str, end_str = start.isoformat(), end.isoformat()
    prompt = (
        f'Generate a subscription performance report for "{project_name}" '
        f"covering {start_str} to {end_str}.\n"
        "\n"
        "CURRENT METRICS (snapshot):\n"
        f"- MRR: {data.mrr_full_formatted}\n"
        f"- MRR change (24h): {data.mrr_change_formatted}\n"
        f"- Active subscriptions: {data.active_subscriptions}\n"
        f"- Active trials: {data.active_trials}\n"
        f"- New subscribers today: {data.new_today_best}\n"
        f"- Trials converting today: {data.trials_converting_today}\n"
        f"- Trial prediction: {data.trial_prediction}\n"
        f"- Currency: {data.currency}"
    )

    churn = current.estimated_churn_rate
    if churn is not None:
        prompt += f"\n- Estimated churn rate (period): {churn:.1f}%"

    prompt += f"\n\nCURRENT PERIOD DAILY DATA ({start_str} to {end_str}):\n"
    prompt += _chart_sections(current)

    if previous.has_data:
        prompt += "\n\nPREVIOUS PERIOD DATA (comparison baseline):\n"
        prompt += _chart_sections(previous)
        previous_churn = previous.estimated_churn_rate
        if previous_churn is not None:
            prompt += f"\n- Previous period estimated churn rate: {previous_churn:.1f}%"

    if marketing is not None and not marketing.is_empty:
        prompt += build_marketing_section(marketing)

    prompt += (
        "\n\nNOTE: The subscription API does not provide a per-product breakdown. "
        "Infer package popularity from the MRR / subscriber ratio if relevant.\n"
    )
    return prompt


# =============================================================================
# MESSAGES
# =============================================================================

def build_generator_messages(data_prompt: str, revision: Optional[str] = None) -> List[Message]:
    messages = [{"role": "system", "content": GENERATOR_SYSTEM_PROMPT}]
    if revision is None:
        messages.append({"role": "user", "content": data_prompt})
    else:
        messages.append(
            {
                "role": "user",
                "content": (
                    "Here is the data and a previous draft that needs improvement:\n\n"
                    f"{data_prompt}\n\n{revision}\n\n"
                    "Please write an improved version addressing the feedback above."
                ),
            }
        )
    return messages


def build_critic_messages(data_prompt: str, draft: str) -> List[Message]:
    return [
        {"role": "system", "content": CRITIC_SYSTEM_PROMPT},
        {"role": "user", "content": f"SOURCE DATA:\n{data_prompt}\n\nREPORT TO REVIEW:\n{draft}"},
    ]


def is_approved(verdict: str) -> bool:
    return verdict.strip().upper().startswith(APPROVED)


def fold_feedback(draft: str, verdict: str) -> str:
    feedback = _NEEDS_REVISION_PREFIX.sub("", verdict, count=1).strip()
    return f"PREVIOUS DRAFT:\n{draft}\n\nCRITIC FEEDBACK:\n{feedback}"


# =============================================================================
# LOOP
# =============================================================================

@dataclass(frozen=True)
class ReportDraft:
    text: str
    attempts: int
    approved: bool


class ReportGenerator:
    """Runs the generator/critic loop against a TextGenClient.

    Usage:
        generator = ReportGenerator(OpenAITextGenClient())
        draft = await generator.run(api_key, data_prompt, on_progress=print)
    """

    def __init__(self, client: TextGenClient, max_attempts: int = MAX_ATTEMPTS, log: LogFn = app_log):
        self.client = client
        self.max_attempts = max_attempts
        self._log = log

    async def run(
        self,
        api_key: Optional[str],
        data_prompt: str,
        on_progress: Optional[ProgressFn] = None,
    ) -> ReportDraft:
        """Loop until the critic approves or the attempt cap is hit.

        Raises:
            NoAPIKeyError: before any call when no key is configured
            TextGenError: any generator/critic failure, immediately
        """
        if not api_key or not api_key.strip():
            raise NoAPIKeyError()
        progress = on_progress or (lambda _message: None)

        revision: Optional[str] = None
        draft = ""
        for attempt in range(1, self.max_attempts + 1):
            progress(f"Generating draft... (attempt {attempt}/{self.max_attempts})")
            draft = await self.client.complete(
                api_key,
                build_generator_messages(data_prompt, revision),
                GENERATOR_TEMPERATURE,
                GENERATOR_MAX_TOKENS,
            )
            self._log(f"Draft {attempt} generated ({len(draft)} chars)", "info", CATEGORY)

            if attempt == self.max_attempts:
                progress("Maximum attempts reached — using final draft")
                break

            progress(f"Quality review... (attempt {attempt}/{self.max_attempts})")
            verdict = await self.client.complete(
                api_key,
                build_critic_messages(data_prompt, draft),
                CRITIC_TEMPERATURE,
                CRITIC_MAX_TOKENS,
            )
            self._log(f"Critic response (attempt {attempt}): {verdict[:100]}", "info", CATEGORY)

            if is_approved(verdict):
                progress(f"Approved after {attempt} {'attempt' if attempt == 1 else 'attempts'}")
                return ReportDraft(text=draft, attempts=attempt, approved=True)

            revision = fold_feedback(draft, verdict)

        return ReportDraft(text=draft, attempts=self.max_attempts, approved=False)

    async def generate(
        self,
        api_key: Optional[str],
        project_name: str,
        start: date,
        end: date,
        data: DashboardData,
        current: ReportChartSet,
        previous: ReportChartSet,
        marketing: Optional[MarketingReport] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> ReportDraft:
        if not api_key or not api_key.strip():
            raise NoAPIKeyError()
        prompt = build_data_prompt(project_name, start, end, data, current, previous, marketing)
        return await self.run(api_key, prompt, on_progress=on_progress)
