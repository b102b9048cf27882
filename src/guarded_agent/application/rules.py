"""Persisted permission rules merged from the global and workspace-local scopes."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from guarded_agent.application.errors import MalformedRuleError
from guarded_agent.application.models import Decision, PermissionRule, RuleKind, RuleScope
from guarded_agent.infrastructure.logging import get_logger
from guarded_agent.infrastructure.storage import atomic_write_json, locked_file

if TYPE_CHECKING:
    from pathlib import Path

    from guarded_agent.infrastructure.config import Config

logger = get_logger(__name__)

# ``Read(./secrets/**)`` / ``Bash(cargo:*)`` 形式
_RULE_ENTRY_RE = re.compile(r"^(?P<kind>Read|Bash)\((?P<pattern>.*)\)$")
_MAX_PATTERN_LENGTH = 500


class PermissionLists(BaseModel):
    """ルールファイルの ``permissions`` セクション."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)
    ask: list[str] = Field(default_factory=list)


class RuleFile(BaseModel):
    """ルールファイル全体（未知のキーは書き戻し時に保持する）."""

    model_config = ConfigDict(extra="allow")

    permissions: PermissionLists = Field(default_factory=PermissionLists)


def parse_rule(
    entry: object, decision: Decision, scope: RuleScope, source: str
) -> PermissionRule:
    """
    ルール文字列をパースする.

    Args:
        entry: ``Read(<glob>)`` または ``Bash(<command>)`` 形式の文字列
        decision: エントリが属するリスト（allow / deny / ask）
        scope: ルールのスコープ
        source: エラーメッセージ用の読み込み元

    Returns:
        パースしたルール

    Raises:
        MalformedRuleError: 記法が不正な場合
    """
    if not isinstance(entry, str):
        raise MalformedRuleError(source, entry, "rule entries must be strings")
    match = _RULE_ENTRY_RE.match(entry.strip())
    if match is None:
        raise MalformedRuleError(
            source, entry, 'expected "Read(<path glob>)" or "Bash(<command>)"'
        )
    pattern = match["pattern"].strip()
    _validate_pattern(source, entry, pattern)
    return PermissionRule(
        scope=scope, kind=RuleKind(match["kind"]), pattern=pattern, decision=decision
    )


def _validate_pattern(source: str, entry: object, pattern: str) -> None:
    if not pattern:
        raise MalformedRuleError(source, entry, "pattern must not be empty")
    if len(pattern) > _MAX_PATTERN_LENGTH:
        raise MalformedRuleError(
            source, entry, f"pattern must be at most {_MAX_PATTERN_LENGTH} characters"
        )
    if "\n" in pattern or "\r" in pattern:
        raise MalformedRuleError(source, entry, "pattern must not contain newlines")


def _read_rule_file(path: Path) -> RuleFile:
    if not path.exists():
        return RuleFile()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRuleError(str(path), "<file>", f"not valid JSON: {e}") from e
    try:
        return RuleFile.model_validate(data)
    except ValidationError as e:
        raise MalformedRuleError(str(path), "<file>", str(e)) from e


class RuleStore:
    """グローバル・ローカル2スコープのルールを保持する."""

    def __init__(self, global_path: Path, local_path: Path) -> None:
        """
        Initialize RuleStore.

        Args:
            global_path: グローバルスコープのルールファイル
            local_path: ワークスペースローカルのルールファイル
        """
        self._paths = {RuleScope.GLOBAL: global_path, RuleScope.LOCAL: local_path}
        self._rules: tuple[PermissionRule, ...] = ()

    @classmethod
    def from_config(cls, config: Config) -> RuleStore:
        """設定からルールストアを作成し、読み込む."""
        store = cls(config.global_rules_file, config.local_rules_file)
        store.load()
        return store

    def path_for(self, scope: RuleScope) -> Path:
        """スコープに対応するルールファイルのパスを返す."""
        return self._paths[scope]

    def source_of(self, rule: PermissionRule) -> Path:
        """ルールの読み込み元ファイルを返す."""
        return self._paths[rule.scope]

    def load(self) -> None:
        """
        両スコープのルールファイルを読み込む.

        Raises:
            MalformedRuleError: ファイルまたはエントリが不正な場合
        """
        rules: list[PermissionRule] = []
        for scope in (RuleScope.GLOBAL, RuleScope.LOCAL):
            rules.extend(self._load_scope(scope))
        self._rules = _merge(rules)
        logger.info(
            "Permission rules loaded",
            total=len(self._rules),
            global_file=str(self._paths[RuleScope.GLOBAL]),
            local_file=str(self._paths[RuleScope.LOCAL]),
        )

    def _load_scope(self, scope: RuleScope) -> list[PermissionRule]:
        path = self._paths[scope]
        lists = _read_rule_file(path).permissions
        return [
            parse_rule(entry, decision, scope, str(path))
            for decision in Decision
            for entry in getattr(lists, decision.value)
        ]

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        """マージ済みの全ルール."""
        return self._rules

    def rules_for(self, kind: RuleKind) -> list[PermissionRule]:
        """指定種別のルールを返す."""
        return [r for r in self._rules if r.kind is kind]

    def remember(self, kind: RuleKind, pattern: str, decision: Decision) -> PermissionRule:
        """
        ローカルスコープにルールを追加（既存なら判定を更新）し、即座に永続化する.

        ファイルロック下でファイルを読み直してから書き換えるため、
        他のセッションによる同時更新を失わない.

        Args:
            kind: ルール種別
            pattern: パターン
            decision: 判定

        Returns:
            追加したルール

        Raises:
            MalformedRuleError: パターンが不正な場合
            OSError: ファイルへの書き込みに失敗した場合
        """
        path = self._paths[RuleScope.LOCAL]
        pattern = pattern.strip()
        _validate_pattern(str(path), pattern, pattern)
        rule = PermissionRule(
            scope=RuleScope.LOCAL, kind=kind, pattern=pattern, decision=decision
        )
        entry = rule.to_entry()

        with locked_file(path):
            rule_file = _read_rule_file(path)
            _remove_entry(rule_file.permissions, entry)
            getattr(rule_file.permissions, decision.value).append(entry)
            try:
                atomic_write_json(path, rule_file.model_dump(mode="json"))
            except OSError:
                logger.exception("Failed to write rule file", path=str(path))
                raise

        logger.info("Permission rule remembered", rule=entry, decision=decision.value)
        self.load()
        return rule

    def forget(self, kind: RuleKind, pattern: str) -> bool:
        """
        ローカルスコープからルールを削除する.

        Args:
            kind: ルール種別
            pattern: パターン

        Returns:
            削除された場合 True、見つからなかった場合 False
        """
        path = self._paths[RuleScope.LOCAL]
        entry = f"{kind.value}({pattern.strip()})"
        with locked_file(path):
            rule_file = _read_rule_file(path)
            if not _remove_entry(rule_file.permissions, entry):
                return False
            atomic_write_json(path, rule_file.model_dump(mode="json"))

        logger.info("Permission rule removed", rule=entry)
        self.load()
        return True


def _remove_entry(lists: PermissionLists, entry: str) -> bool:
    removed = False
    for decision in Decision:
        entries: list[str] = getattr(lists, decision.value)
        kept = [e for e in entries if e.strip() != entry]
        if len(kept) != len(entries):
            setattr(lists, decision.value, kept)
            removed = True
    return removed


def _merge(rules: list[PermissionRule]) -> tuple[PermissionRule, ...]:
    """同一パターンのルールはローカルスコープを優先する."""
    local_keys = {(r.kind, r.pattern) for r in rules if r.scope is RuleScope.LOCAL}
    return tuple(
        r
        for r in rules
        if r.scope is RuleScope.LOCAL or (r.kind, r.pattern) not in local_keys
    )
