"""Per-domain access policies and their evaluation."""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any

from timedash.api.services.grants import GrantManager
from timedash.api.services.storage import StorageManager
from timedash.errors import ValidationError
from timedash.model.models import AccessResponse, RestrictedSiteModel
from timedash.watchers.domain import extract_domain, is_valid_domain, normalize_domain
from timedash.watchers.logger import logger

BLOCKED_KEY = "blockedSites"
RESTRICTED_KEY = "restrictedSites"
LEGACY_BLOCKLIST_KEY = "blockList"

DEFAULT_LIMIT_MINUTES = 30
MAX_LIMIT_MINUTES = 24 * 60

REASON_BLOCKED = "blocked"
REASON_RESTRICTED = "restricted"


@dataclass(frozen=True)
class BlockedRule:
    """Site is never accessible."""

    domain: str


@dataclass(frozen=True)
class RestrictedRule:
    """Site is accessible until today's usage reaches the limit."""

    domain: str
    time_limit_minutes: int = DEFAULT_LIMIT_MINUTES


Rule = BlockedRule | RestrictedRule


@dataclass(frozen=True)
class AccessDecision:
    should_block: bool
    reason: str | None = None
    domain: str = ""
    remaining_minutes: int | None = None

    def to_response(self) -> AccessResponse:
        return {
            "shouldBlock": self.should_block,
            "reason": self.reason,
            "domain": self.domain,
        }


def evaluate_rule(rule: Rule, today_seconds: float) -> AccessDecision:
    """Decide access for one rule given today's usage in seconds."""
    match rule:
        case BlockedRule(domain=domain):
            return AccessDecision(True, REASON_BLOCKED, domain)
        case RestrictedRule(domain=domain, time_limit_minutes=limit):
            limit_seconds = limit * 60
            if today_seconds >= limit_seconds:
                return AccessDecision(True, REASON_RESTRICTED, domain, 0)
            remaining = math.ceil((limit_seconds - today_seconds) / 60)
            return AccessDecision(False, REASON_RESTRICTED, domain, remaining)
    msg = f"unknown rule type: {type(rule).__name__}"
    raise TypeError(msg)


def make_rule(domain: str, rule_type: str, time_limit_minutes: Any = None) -> Rule:
    """Validate user input and build a rule.

    Raises:
        ValidationError: malformed domain, unknown type or bad limit.

    """
    key = normalize_domain(domain)
    if not is_valid_domain(key):
        msg = f"invalid domain: {domain!r}"
        raise ValidationError(msg)

    kind = (rule_type or "").strip().lower()
    if kind == REASON_BLOCKED:
        return BlockedRule(key)
    if kind == REASON_RESTRICTED:
        limit = DEFAULT_LIMIT_MINUTES if time_limit_minutes is None else time_limit_minutes
        if isinstance(limit, bool) or not isinstance(limit, int):
            if isinstance(limit, float) and limit.is_integer():
                limit = int(limit)
            else:
                msg = f"timeLimitMinutes must be an integer, got {time_limit_minutes!r}"
                raise ValidationError(msg)
        if not 1 <= limit <= MAX_LIMIT_MINUTES:
            msg = f"timeLimitMinutes must be between 1 and {MAX_LIMIT_MINUTES}"
            raise ValidationError(msg)
        return RestrictedRule(key, limit)
    msg = f"unknown rule type: {rule_type!r}"
    raise ValidationError(msg)


def serialize_rules(rules: dict[str, Rule]) -> tuple[list[str], list[RestrictedSiteModel]]:
    blocked: list[str] = []
    restricted: list[RestrictedSiteModel] = []
    for rule in rules.values():
        match rule:
            case BlockedRule(domain=domain):
                blocked.append(domain)
            case RestrictedRule(domain=domain, time_limit_minutes=limit):
                restricted.append({"domain": domain, "timeLimitMinutes": limit})
    return blocked, restricted


def deserialize_rules(blocked: list[Any], restricted: list[Any]) -> dict[str, Rule]:
    """Rebuild the domain-keyed rule set; malformed entries are skipped."""
    rules: dict[str, Rule] = {}
    for domain in blocked or []:
        try:
            rule = make_rule(domain, REASON_BLOCKED)
        except (ValidationError, AttributeError):
            logger.warning("Skipping malformed blocked entry: %r", domain)
            continue
        rules[rule.domain] = rule
    for entry in restricted or []:
        try:
            rule = make_rule(entry["domain"], REASON_RESTRICTED, entry.get("timeLimitMinutes"))
        except (ValidationError, KeyError, TypeError, AttributeError):
            logger.warning("Skipping malformed restricted entry: %r", entry)
            continue
        rules[rule.domain] = rule
    return rules


class RuleEngine:
    """Holds one rule per domain; the only writer of the rule lists.

    Every read-modify-persist-swap of the rule set runs under ``_lock`` so
    overlapping requests build on each other instead of on the same old set.
    """

    def __init__(self, storage: StorageManager, grants: GrantManager) -> None:
        self.storage = storage
        self.grants = grants
        self._rules: dict[str, Rule] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        async with self._lock:
            doc = await self.storage.snapshot()
            legacy = doc.get(LEGACY_BLOCKLIST_KEY)
            if legacy and BLOCKED_KEY not in doc and RESTRICTED_KEY not in doc:
                rules = deserialize_rules(legacy, [])
                await self._persist(rules, drop_legacy=True)
                logger.info("Migrated %s legacy blockList entries", len(rules))
            else:
                rules = deserialize_rules(doc.get(BLOCKED_KEY, []), doc.get(RESTRICTED_KEY, []))
            self._rules = rules
        logger.info("Loaded %s site rules", len(rules))

    async def _persist(self, rules: dict[str, Rule], *, drop_legacy: bool = False) -> None:
        blocked, restricted = serialize_rules(rules)

        def _write(doc: dict[str, Any]) -> None:
            doc[BLOCKED_KEY] = blocked
            doc[RESTRICTED_KEY] = restricted
            if drop_legacy:
                doc.pop(LEGACY_BLOCKLIST_KEY, None)

        await self.storage.transact(_write)

    async def add_rule(self, rule: Rule) -> None:
        """Add or replace the rule for ``rule.domain``."""
        validated = make_rule(
            rule.domain,
            REASON_BLOCKED if isinstance(rule, BlockedRule) else REASON_RESTRICTED,
            getattr(rule, "time_limit_minutes", None),
        )
        async with self._lock:
            updated = {**self._rules, validated.domain: validated}
            await self._persist(updated)
            self._rules = updated
        logger.info("Rule set | %s", validated)

    async def remove_rule(self, domain: str) -> bool:
        key = normalize_domain(domain)
        if not is_valid_domain(key):
            msg = f"invalid domain: {domain!r}"
            raise ValidationError(msg)
        async with self._lock:
            if key not in self._rules:
                return False
            updated = {d: r for d, r in self._rules.items() if d != key}
            await self._persist(updated)
            self._rules = updated
        logger.info("Rule removed | domain=%s", key)
        return True

    async def toggle_block(self, domain: str) -> bool:
        """Flip ``domain`` between blocked and no rule; returns the new state.

        A restricted domain becomes blocked.
        """
        blocked = make_rule(domain, REASON_BLOCKED)
        async with self._lock:
            if isinstance(self._rules.get(blocked.domain), BlockedRule):
                updated = {d: r for d, r in self._rules.items() if d != blocked.domain}
            else:
                updated = {**self._rules, blocked.domain: blocked}
            await self._persist(updated)
            self._rules = updated
        now_blocked = blocked.domain in updated
        logger.info("Block toggled | domain=%s blocked=%s", blocked.domain, now_blocked)
        return now_blocked

    def get_rule(self, domain: str) -> Rule | None:
        return self._rules.get(normalize_domain(domain))

    def rules(self) -> dict[str, Rule]:
        return dict(self._rules)

    def blocked_domains(self) -> list[str]:
        return serialize_rules(self._rules)[0]

    def restricted_domains(self) -> list[RestrictedSiteModel]:
        return serialize_rules(self._rules)[1]

    def evaluate_access(self, url: str, today_seconds: float = 0) -> AccessDecision:
        """Decide whether ``url`` should be blocked right now.

        Order: no rule allows; a live temporary grant allows regardless of
        rule kind; otherwise the rule decides.
        """
        domain = extract_domain(url)
        rule = self._rules.get(domain)
        if rule is None:
            return AccessDecision(False, None, domain)
        if self.grants.has_access(domain):
            return AccessDecision(False, None, domain)
        return evaluate_rule(rule, today_seconds)
