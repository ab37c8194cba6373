# rules_engine/rule_store.py
"""
Rule Store: the active, ordered ruleset.

The ruleset is read once when a worker starts. It is only reloaded through
an explicit refresh(), and replace() swaps the whole set at once (there is
no per-rule patching). Sources are a JSON file (ref/rules.json by default)
or a redis key holding the same JSON array.
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence, Tuple

import redis
from pydantic import ValidationError

from common.errors import RuleStoreUnavailable, RulesetError
from common.logging import get_logger
from common.schemas import Rule

log = get_logger(__name__)


def parse_ruleset(data: Any) -> List[Rule]:
    """Validate a decoded JSON ruleset. Names must be unique."""
    if not isinstance(data, list):
        raise RulesetError(f"ruleset must be a JSON array, got {type(data).__name__}")
    rules: List[Rule] = []
    seen = set()
    for i, raw in enumerate(data):
        try:
            rule = Rule.model_validate(raw)
        except ValidationError as e:
            raise RulesetError(f"rule #{i} is invalid: {e}") from e
        if rule.name in seen:
            raise RulesetError(f"duplicate rule name '{rule.name}'")
        seen.add(rule.name)
        rules.append(rule)
    return rules


class RuleSource(Protocol):
    def read(self) -> Optional[List[Any]]: ...
    def write(self, data: List[Any]) -> None: ...


class JsonFileRuleSource:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> Optional[List[Any]]:
        if not self.path.exists():
            return None
        with self.path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def write(self, data: List[Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def __repr__(self) -> str:
        return f"file:{self.path}"


class RedisRuleSource:
    def __init__(self, client: redis.Redis, key: str = "sec:rules") -> None:
        self.r = client
        self.key = key

    def read(self) -> Optional[List[Any]]:
        raw = self.r.get(self.key)
        return json.loads(raw) if raw else None

    def write(self, data: List[Any]) -> None:
        self.r.set(self.key, json.dumps(data, ensure_ascii=False))

    def __repr__(self) -> str:
        return f"redis:{self.key}"


class RuleStore:
    def __init__(self, source: RuleSource) -> None:
        self.source = source
        self._rules: Tuple[Rule, ...] = ()
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def rules(self) -> Tuple[Rule, ...]:
        """Snapshot; stays stable for the whole of an evaluation pass."""
        return self._rules

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> Tuple[Rule, ...]:
        """
        Read the ruleset from the source. Any failure to read or validate is
        reported as RuleStoreUnavailable; a missing ruleset loads as empty.
        """
        try:
            data = self.source.read()
            rules = parse_ruleset(data if data is not None else [])
        except (OSError, ValueError, RulesetError, redis.exceptions.RedisError) as e:
            raise RuleStoreUnavailable(f"cannot load rules from {self.source!r}: {e}") from e
        if data is None:
            log.warning("no ruleset found at %r; running with 0 rules", self.source)
        with self._lock:
            self._rules = tuple(rules)
            self._loaded = True
        log.info("loaded %d rule(s) from %r", len(rules), self.source)
        return self._rules

    def refresh(self) -> Tuple[Rule, ...]:
        return self.load()

    def replace(self, rules: Sequence[Any]) -> Tuple[Rule, ...]:
        """Validate and persist a whole new ruleset, then make it active."""
        data = [r.to_wire() if isinstance(r, Rule) else r for r in rules]
        validated = parse_ruleset(data)
        self.source.write([r.to_wire() for r in validated])
        with self._lock:
            self._rules = tuple(validated)
            self._loaded = True
        log.info("ruleset replaced (%d rule(s))", len(validated))
        return self._rules


def seed_redis_rules(client: redis.Redis, key: str, rules_file: str | Path) -> bool:
    """Copy the file ruleset into redis when the key is empty. Returns True if seeded."""
    target = RedisRuleSource(client, key)
    if target.read() is not None:
        return False
    data = JsonFileRuleSource(rules_file).read()
    if data is None:
        return False
    target.write([r.to_wire() for r in parse_ruleset(data)])
    log.info("seeded %s from %s", key, rules_file)
    return True
