"""Path permission evaluation against workspace containment and persisted rules."""

from __future__ import annotations

import os
import posixpath
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import pathspec

from guarded_agent.application.models import (
    Decision,
    PathDecision,
    PermissionRule,
    RuleKind,
    RuleScope,
)
from guarded_agent.infrastructure.config import STATE_DIR_NAME
from guarded_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from guarded_agent.application.rules import RuleStore

logger = get_logger(__name__)

GLOB_CHARS = frozenset("*?[")


@lru_cache(maxsize=1024)
def _compile(anchored_pattern: str) -> pathspec.PathSpec:
    return pathspec.PathSpec.from_lines("gitwildmatch", [anchored_pattern])


def has_glob(text: str) -> bool:
    """文字列にグロブのメタ文字が含まれる場合 True."""
    return any(ch in GLOB_CHARS for ch in text)


def literal_prefix(pattern: str) -> str:
    """最初のグロブ文字より前の部分を返す."""
    for i, ch in enumerate(pattern):
        if ch in GLOB_CHARS:
            return pattern[:i]
    return pattern


class PermissionEngine:
    """ファイルパスへのアクセス可否を判定する.

    ワークスペース内は Deny ルールに一致しない限り許可、
    ワークスペース外は Allow ルールに一致しない限り拒否する.
    パスはシンボリックリンクと ``..`` を解決した実体で判定する.
    """

    def __init__(
        self,
        workspace_root: Path,
        rule_store: RuleStore,
        home: Path | None = None,
    ) -> None:
        """
        Initialize PermissionEngine.

        Args:
            workspace_root: ワークスペースのルート（存在している必要がある）
            rule_store: ルールストア
            home: ``~`` の展開先（省略時はユーザーのホームディレクトリ）

        Raises:
            FileNotFoundError: ワークスペースが存在しない場合
        """
        self._root = Path(workspace_root).expanduser().resolve(strict=True)
        self._rule_store = rule_store
        self._home = (home or Path.home()).resolve()
        self._pattern_cache: dict[str, str] = {}
        self._state_dir = (self._root / STATE_DIR_NAME).resolve()
        self._rule_files = frozenset(
            rule_store.path_for(scope).expanduser().resolve() for scope in RuleScope
        )

    @property
    def workspace_root(self) -> Path:
        """正規化済みのワークスペースルート."""
        return self._root

    @property
    def rule_store(self) -> RuleStore:
        """参照しているルールストア."""
        return self._rule_store

    def _expand(self, path: str | Path) -> Path:
        text = str(path)
        if text == "~" or text.startswith("~/"):
            candidate = Path(str(self._home) + text[1:])
        else:
            candidate = Path(text).expanduser()
        if not candidate.is_absolute():
            candidate = self._root / candidate
        return candidate

    def canonicalize(self, path: str | Path, *, must_exist: bool = False) -> Path:
        """
        パスを正規化する.

        存在しないパスは実在する最も近い祖先を解決した上で残りを連結する.

        Args:
            path: 対象パス（相対パスはワークスペース基準）
            must_exist: True の場合、存在しないパスは例外にする

        Returns:
            シンボリックリンクと ``..`` を解決した絶対パス

        Raises:
            FileNotFoundError: must_exist が True で存在しない場合
            OSError: シンボリックリンクのループなどで解決できない場合
            RuntimeError: 古いPythonでシンボリックリンクのループを検出した場合
        """
        candidate = self._expand(path)
        try:
            return candidate.resolve(strict=True)
        except FileNotFoundError:
            if must_exist:
                raise
            return candidate.resolve(strict=False)

    def is_inside(self, canonical_path: Path) -> bool:
        """正規化済みパスがワークスペース内にある場合 True."""
        return canonical_path == self._root or canonical_path.is_relative_to(self._root)

    def is_protected(self, canonical_path: Path) -> bool:
        """
        正規化済みパスがエージェント自身の状態（ルールファイル、セッション）を指す場合 True.

        これらはツールから変更できない. ルールは確認UIでの「記憶する」選択でのみ更新する.
        """
        return (
            canonical_path == self._state_dir
            or canonical_path.is_relative_to(self._state_dir)
            or canonical_path in self._rule_files
        )

    def absolute_pattern(self, pattern: str) -> str:
        """
        ルールのパターンを正規化済みの絶対パターンに変換する.

        ``~`` を展開し、相対パターンはワークスペース基準にし、
        グロブを含まない先頭部分はパスと同様に実体へ解決する.
        """
        cached = self._pattern_cache.get(pattern)
        if cached is not None:
            return cached

        expanded = str(self._expand(pattern))
        segments = expanded.split("/")
        split_at = next(
            (i for i, seg in enumerate(segments) if has_glob(seg)), len(segments)
        )
        literal = "/".join(segments[:split_at]) or "/"
        rest = [seg for seg in segments[split_at:] if seg]
        resolved = Path(literal).resolve(strict=False)
        result = posixpath.join(str(resolved), *rest)
        if pattern.endswith("/") and not result.endswith("/"):
            result += "/"

        self._pattern_cache[pattern] = result
        return result

    def _rule_matches(self, rule: PermissionRule, path: Path) -> bool:
        anchored = "/" + self.absolute_pattern(rule.pattern).lstrip("/")
        return _compile(anchored).match_file(str(path).lstrip("/"))

    def specificity(self, rule: PermissionRule) -> tuple[int, int, int, int]:
        """
        ルールの優先度キーを返す（大きいほど優先）.

        1. リテラル部分（最初のグロブ文字まで）が長い
        2. グロブを含まないパスセグメントが多い
        3. ローカルスコープ
        4. Deny
        """
        pattern = self.absolute_pattern(rule.pattern)
        literal_segments = sum(1 for seg in pattern.split("/") if seg and not has_glob(seg))
        return (
            len(literal_prefix(pattern)),
            literal_segments,
            1 if rule.scope is RuleScope.LOCAL else 0,
            1 if rule.decision is not Decision.ALLOW else 0,
        )

    def best_match(
        self, path: Path, kind: RuleKind = RuleKind.READ
    ) -> PermissionRule | None:
        """パスに一致するルールのうち最も優先度の高いものを返す."""
        matched = [
            r for r in self._rule_store.rules_for(kind) if self._rule_matches(r, path)
        ]
        if not matched:
            return None
        return max(matched, key=self.specificity)

    def evaluate(
        self,
        path: str | Path,
        kind: RuleKind = RuleKind.READ,
        *,
        must_exist: bool = False,
    ) -> PathDecision:
        """
        パスへのアクセス可否を判定する.

        Args:
            path: 対象パス
            kind: ルール種別（通常は Read）
            must_exist: 存在しないパスを拒否する場合 True

        Returns:
            判定結果
        """
        requested = str(path)
        try:
            canonical = self.canonicalize(path, must_exist=must_exist)
        except (OSError, RuntimeError) as e:
            logger.warning("Path could not be resolved", path=requested, error=str(e))
            return PathDecision(
                requested_path=requested,
                canonical_path=None,
                inside_workspace=False,
                decision=Decision.DENY,
                reason=f"Cannot resolve path '{requested}': {e}",
            )

        inside = self.is_inside(canonical)
        rule = self.best_match(canonical, kind)

        if rule is None or rule.decision is Decision.ALLOW:
            # 見かけ上の位置に対する Deny ルールも拒否として扱う
            lexical = Path(os.path.normpath(self._expand(path)))
            if lexical != canonical:
                lexical_rule = self.best_match(lexical, kind)
                if lexical_rule is not None and lexical_rule.decision is not Decision.ALLOW:
                    rule = lexical_rule

        decision = self._decide(requested, canonical, inside, rule)
        if decision.allowed:
            logger.debug(
                "Path access allowed",
                path=requested,
                canonical=str(canonical),
                rule=rule.to_entry() if rule else None,
            )
        else:
            logger.warning(
                "Path access denied",
                path=requested,
                canonical=str(canonical),
                inside_workspace=inside,
                rule=rule.to_entry() if rule else None,
            )
        return decision

    def _decide(
        self,
        requested: str,
        canonical: Path,
        inside: bool,
        rule: PermissionRule | None,
    ) -> PathDecision:
        def build(decision: Decision, reason: str, hint: str | None = None) -> PathDecision:
            return PathDecision(
                requested_path=requested,
                canonical_path=canonical,
                inside_workspace=inside,
                decision=decision,
                matched_rule=rule,
                reason=reason,
                hint=hint,
            )

        if rule is None:
            if inside:
                return build(Decision.ALLOW, "Path is inside the workspace")
            return build(
                Decision.DENY,
                f"Path '{requested}' resolves to '{canonical}', "
                f"which is outside the workspace '{self._root}'",
                f'Add "Read({canonical})" to permissions.allow in '
                f"{self._rule_store.path_for(RuleScope.LOCAL)} to grant read access",
            )

        entry = rule.to_entry()
        source = self._rule_store.source_of(rule)
        if rule.decision is Decision.ALLOW:
            return build(Decision.ALLOW, f"Allowed by rule {entry} ({rule.scope.value})")
        if rule.decision is Decision.ASK:
            return build(
                Decision.DENY,
                f"Rule {entry} in {source} uses 'ask', which only applies to Bash "
                "commands; treating it as deny",
                f'Move "{entry}" to permissions.allow or permissions.deny',
            )
        return build(
            Decision.DENY,
            f"Access to '{requested}' is denied by rule {entry} in {source}",
            f'Remove "{entry}" from permissions.deny in {source} to allow access',
        )
