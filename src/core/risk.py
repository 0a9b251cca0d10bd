"""
risk.py

Heuristic risk classification for proposed tool calls.

File responsibilities:
- RiskClassifier.classify(call, context, approvals) -> Classification (definite or uncertain)
- assess_app_risk(context): contextual signal about the foreground app
- Fixed phrase/domain tables for each gated tool

Design:
- Pure and synchronous: no I/O, sub-millisecond
- Tables are checked most-severe first so a call can never be scored lower than
  its most severe matching signal
- Only one case is left uncertain (an unrecognised shell command); the gate hands
  that to the LLM arbiter
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from .commands import Tier2Category, classify_applescript, classify_command
from .sensitive import (
    contains_sensitive_data,
    is_secure_field,
    is_sensitive_form_context,
    is_sensitive_label,
)
from .state import ActionContext, PermissionMode, RiskLevel, RiskVerdict, ToolCall



# Classification result


@dataclass(frozen=True)
class Classification:
    verdict: RiskVerdict
    definite: bool = True

    @classmethod
    def certain(cls, verdict: RiskVerdict) -> "Classification":
        return cls(verdict=verdict, definite=True)

    @classmethod
    def uncertain(cls, verdict: RiskVerdict) -> "Classification":
        return cls(verdict=verdict, definite=False)



# Tables


CLICK_CRITICAL_PHRASES: List[str] = [
    "purchase", "buy now", "place order", "checkout", "pay",
    "confirm payment", "authorize", "wire transfer", "send money",
    "subscribe", "confirm purchase",
]

CLICK_HIGH_PHRASES: List[str] = [
    "send", "submit", "post", "publish", "delete", "remove",
    "trash", "confirm", "sign out", "log out", "unsubscribe",
    "cancel subscription", "transfer", "approve", "execute",
    "empty trash", "permanently delete", "revoke",
]

CONFIRMATION_DIALOG_WORDS: List[str] = [
    "confirm", "are you sure", "delete", "remove", "send",
    "transfer", "payment", "purchase", "unsubscribe",
]

MESSAGING_APPS: List[str] = [
    "messages", "telegram", "whatsapp", "slack", "discord",
    "signal", "microsoft teams", "mail",
]

BANKING_DOMAINS: List[str] = [
    "chase.com", "bankofamerica.com", "wellsfargo.com", "citi.com",
    "capitalone.com", "usbank.com", "pnc.com", "tdbank.com",
    "schwab.com", "fidelity.com", "vanguard.com", "etrade.com",
    "paypal.com", "venmo.com", "zelle.com", "wise.com",
    "coinbase.com", "binance.com", "kraken.com",
]

SOCIAL_DOMAINS: List[str] = [
    "twitter.com", "x.com", "facebook.com", "instagram.com",
    "linkedin.com", "reddit.com", "tiktok.com", "youtube.com",
    "mail.google.com", "outlook.live.com", "mail.yahoo.com",
]

# Used by assess_app_risk against the current browser URL.
BANKING_CONTEXT_PATTERNS: List[str] = [
    "chase.com", "bankofamerica.com", "wellsfargo.com", "citi.com",
    "paypal.com", "venmo.com", "schwab.com", "fidelity.com",
    "mint.com", "creditkarma.com",
]

COMMUNICATION_APPS: List[str] = [
    "mail", "outlook", "gmail", "thunderbird",
    "messages", "telegram", "whatsapp", "slack", "discord",
]

COMPOSE_TITLE_WORDS: List[str] = ["compose", "new message", "reply"]

OUTBOUND_MESSAGE_TOOL = "openclaw_send"



# App-risk assessment


def assess_app_risk(context: ActionContext) -> RiskLevel:
    """Contextual risk of the foreground app. A signal for evaluators, never a gate."""
    app = (context.active_app_name or "").lower()
    bundle = (context.active_app_bundle_id or "").lower()
    url = (context.current_url or "").lower()

    if any(p in url for p in BANKING_CONTEXT_PATTERNS):
        return RiskLevel.CRITICAL

    if any(c in app for c in COMMUNICATION_APPS):
        title = (context.window_title or "").lower()
        if any(w in title for w in COMPOSE_TITLE_WORDS):
            return RiskLevel.HIGH
        return RiskLevel.MODERATE

    if "system preferences" in app or "system settings" in app or bundle == "com.apple.systempreferences":
        return RiskLevel.HIGH

    if "terminal" in app or "iterm" in app or "terminal" in bundle:
        return RiskLevel.MODERATE

    return RiskLevel.SAFE


def _host_matches(host: str, domains: List[str]) -> bool:
    return any(host == d or host.endswith("." + d) for d in domains)


def _app(context: ActionContext, fallback: str = "unknown") -> str:
    return context.active_app_name or fallback



# Classifier


class RiskClassifier:
    """
    Dispatches on tool name. `approvals` is a read-only view of the gate's session
    approval cache; it is consulted only for categorised shell commands.
    """

    def __init__(self, permission_mode: PermissionMode = "standard") -> None:
        self.permission_mode = permission_mode
        self._evaluators: Dict[str, Callable[[ToolCall, ActionContext, Mapping[str, bool]], Classification]] = {
            "click": self._click,
            "right_click": self._click,
            "type_text": self._type_text,
            "press_key": self._press_key,
            "run_shell_command": self._shell,
            "run_applescript": self._applescript,
            "open_url": self._open_url,
            OUTBOUND_MESSAGE_TOOL: self._outbound_message,
        }

    def classify(
        self,
        call: ToolCall,
        context: ActionContext,
        approvals: Optional[Mapping[str, bool]] = None,
    ) -> Classification:
        evaluator = self._evaluators.get(call.name)
        if evaluator is None:
            return Classification.certain(RiskVerdict(
                level=RiskLevel.MODERATE,
                reason=f"Plugin/unrecognized tool: {call.name}",
                tool=call.name,
            ))
        return evaluator(call, context, approvals or {})

    # --- click / right_click

    def _click(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        desc = call.get("element_description").lower()

        if any(p in desc for p in CLICK_CRITICAL_PHRASES):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.CRITICAL,
                reason=f"Financial action: {desc}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=(
                    f'FINANCIAL ACTION: Click "{desc}"?\n\n'
                    f"App: {_app(context)}\nWindow: {context.window_title or 'unknown'}"
                ),
            ))

        if any(p in desc for p in CLICK_HIGH_PHRASES):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Irreversible UI action: {desc} in {_app(context)}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f'Click "{desc}" in {_app(context, "unknown app")}?',
            ))

        if assess_app_risk(context) >= RiskLevel.HIGH:
            return Classification.certain(RiskVerdict(
                level=RiskLevel.MODERATE,
                reason=f"Click in sensitive app: {_app(context)}",
                tool=call.name,
            ))

        return Classification.certain(RiskVerdict(level=RiskLevel.SAFE, reason="Normal click", tool=call.name))

    # --- type_text

    def _type_text(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        text = call.get("text")

        # Hard block: no mode or session approval can lower this.
        if contains_sensitive_data(text):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.CRITICAL,
                reason="Text contains sensitive data pattern (credit card / SSN)",
                tool=call.name,
                requires_approval=True,
                approval_prompt=(
                    "SENSITIVE DATA DETECTED: The text to type appears to contain a credit card "
                    "number or SSN. This action is blocked for safety."
                ),
            ))

        if is_secure_field(context.focused_element_role):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Typing into password/secure field in {_app(context)}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=(
                    f"Type into secure field ({context.focused_element_label or 'password'}) "
                    f"in {_app(context, 'unknown app')}?"
                ),
            ))

        if is_sensitive_form_context(context.window_title, context.current_url):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Typing in sensitive form context: {context.window_title or 'unknown'}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=(
                    f'Type "{text[:50]}" into form in {_app(context)}?\n'
                    f"Window: {context.window_title or 'unknown'}"
                ),
            ))

        if is_sensitive_label(context.focused_element_label):
            label = context.focused_element_label or ""
            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Typing into field labeled '{label}'",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f'Type into field "{label}" in {_app(context)}?',
            ))

        return Classification.certain(RiskVerdict(level=RiskLevel.SAFE, reason="Normal text input", tool=call.name))

    # --- press_key

    def _press_key(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        key = call.get("key").lower()
        has_cmd = call.get("command") in ("true", "1")

        if key in ("return", "enter"):
            title = (context.window_title or "").lower()
            if any(w in title for w in CONFIRMATION_DIALOG_WORDS):
                return Classification.certain(RiskVerdict(
                    level=RiskLevel.HIGH,
                    reason=f"Enter pressed in confirmation dialog: {context.window_title or ''}",
                    tool=call.name,
                    requires_approval=True,
                    approval_prompt=(
                        f'Press Enter in "{context.window_title or "dialog"}"?\n\nApp: {_app(context)}'
                    ),
                ))

            app = (context.active_app_name or "").lower()
            last = context.recent_tool_calls[-1] if context.recent_tool_calls else None
            if any(m in app for m in MESSAGING_APPS) and last is not None and last[0] == "type_text":
                return Classification.certain(RiskVerdict(
                    level=RiskLevel.HIGH,
                    reason="Enter in messaging app after typing -- will send message",
                    tool=call.name,
                    requires_approval=True,
                    approval_prompt=(
                        f"Press Enter to send message in {_app(context, 'messaging app')}?\n"
                        f"Last typed: {last[1][:80]}"
                    ),
                ))

            if assess_app_risk(context) >= RiskLevel.HIGH:
                return Classification.certain(RiskVerdict(
                    level=RiskLevel.HIGH,
                    reason=f"Enter pressed in sensitive app: {_app(context)}",
                    tool=call.name,
                    requires_approval=True,
                    approval_prompt=(
                        f"Press Enter in {_app(context, 'unknown app')}?\n"
                        f"Window: {context.window_title or 'unknown'}"
                    ),
                ))

        if has_cmd and key in ("delete", "backspace"):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Destructive shortcut: Cmd+Delete in {_app(context)}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f"Press Cmd+Delete in {_app(context, 'unknown app')}?",
            ))

        return Classification.certain(RiskVerdict(level=RiskLevel.SAFE, reason="Normal key press", tool=call.name))

    # --- run_shell_command

    def _shell(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        command = call.get("command")
        tier = classify_command(command)

        if tier.tier == 3:
            return Classification.certain(RiskVerdict(
                level=RiskLevel.CRITICAL,
                reason=f"Tier 3 shell command: {tier.reason}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f"DANGEROUS COMMAND:\n\n{command}\n\nReason: {tier.reason}",
            ))

        if tier.tier == 2:
            category = tier.category
            if category is Tier2Category.UNCATEGORIZED:
                return Classification.uncertain(RiskVerdict(
                    level=RiskLevel.HIGH,
                    reason="Unrecognized command -- needs LLM evaluation",
                    tool=call.name,
                    requires_approval=True,
                    approval_prompt=f"Unrecognized command:\n\n{command}",
                ))

            cache_key = f"shell:{category.value}"
            if approvals.get(cache_key) is True and self.permission_mode != "standard":
                return Classification.certain(RiskVerdict(
                    level=RiskLevel.MODERATE,
                    reason=f"Tier 2 shell ({category.value}) -- session-approved",
                    tool=call.name,
                ))

            return Classification.certain(RiskVerdict(
                level=RiskLevel.HIGH,
                reason=f"Tier 2 shell command: {category.approval_prompt}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f"{category.approval_prompt}\n\n{command}",
                session_cache_key=cache_key,
            ))

        return Classification.certain(RiskVerdict(
            level=RiskLevel.SAFE, reason="Tier 1 read-only command", tool=call.name,
        ))

    # --- run_applescript

    def _applescript(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        script = call.get("script")
        tier = classify_applescript(script)

        if tier.tier == 3:
            return Classification.certain(RiskVerdict(
                level=RiskLevel.CRITICAL,
                reason=f"Tier 3 AppleScript: {tier.reason}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=f"DANGEROUS APPLESCRIPT:\n\n{script[:200]}\n\nReason: {tier.reason}",
            ))

        # Tier 2 AppleScript is logged but not gated, unlike shell tier 2.
        if tier.tier == 2:
            return Classification.certain(RiskVerdict(
                level=RiskLevel.MODERATE,
                reason=f"Tier 2 AppleScript: {tier.category.value}",
                tool=call.name,
            ))

        return Classification.certain(RiskVerdict(level=RiskLevel.SAFE, reason="Read-only AppleScript", tool=call.name))

    # --- open_url

    def _open_url(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        url = call.get("url")
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            host = ""

        if _host_matches(host, BANKING_DOMAINS):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.CRITICAL,
                reason=f"Opening banking/financial site: {host}",
                tool=call.name,
                requires_approval=True,
                approval_prompt=(
                    f"FINANCIAL SITE: Open {url}?\n\n"
                    "Note: the agent will NOT enter any credentials or financial data."
                ),
            ))

        if _host_matches(host, SOCIAL_DOMAINS):
            return Classification.certain(RiskVerdict(
                level=RiskLevel.MODERATE,
                reason=f"Opening social/email site: {host}",
                tool=call.name,
            ))

        return Classification.certain(RiskVerdict(level=RiskLevel.SAFE, reason="Normal URL navigation", tool=call.name))

    # --- outbound messaging

    def _outbound_message(self, call: ToolCall, context: ActionContext, approvals: Mapping[str, bool]) -> Classification:
        message = call.get("message")
        channel = call.get("channel") or "default"
        return Classification.certain(RiskVerdict(
            level=RiskLevel.HIGH,
            reason=f"Sending outbound message ({channel})",
            tool=call.name,
            requires_approval=True,
            approval_prompt=f"Send message via {channel}?\n\nMessage: {message[:200]}",
        ))
