"""Three-tier static classification of shell command lines."""

from __future__ import annotations

import fnmatch
import os
import re
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from guarded_agent.application.models import (
    BashClassification,
    BashTier,
    Decision,
    PermissionRule,
    RuleKind,
    RuleScope,
)
from guarded_agent.application.permission import has_glob
from guarded_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from guarded_agent.application.permission import PermissionEngine

logger = get_logger(__name__)

# ビルド・読み取り専用の調査・テキスト処理・読み取り専用のバージョン管理
ALLOWED_COMMANDS: frozenset[str] = frozenset({
    # ビルドツール
    "cargo", "rustc", "npm", "yarn", "pnpm", "node", "python", "python3", "pip",
    "go", "make", "cmake", "gcc", "g++", "javac", "java", "mvn", "gradle",
    # ファイル参照
    "ls", "cat", "head", "tail", "less", "more", "grep", "egrep", "fgrep",
    "rg", "ag", "ack", "find", "file", "stat", "wc", "diff", "cmp",
    # システム情報
    "pwd", "whoami", "date", "hostname", "uname", "arch", "env", "printenv",
    "echo", "printf", "which", "whereis", "type", "ps", "top", "htop",
    # バージョン管理（危険なサブコマンドは別途判定）
    "git",
    # アーカイブ
    "tar", "gzip", "gunzip", "bzip2", "bunzip2", "unzip", "xz",
    # テキスト処理
    "sed", "awk", "cut", "sort", "uniq", "tr", "expand", "unexpand", "column",
    "paste", "join",
    # その他
    "test", "true", "false", "seq", "timeout", "time", "basename", "dirname",
    "realpath", "readlink", "hexdump", "od", "strings", "base64",
    "sha256sum", "sha512sum", "md5sum",
})

DIRECTORY_CHANGE_COMMANDS: frozenset[str] = frozenset({"cd", "pushd", "popd"})

# 破壊的・特権的な操作（常に拒否）
FORBIDDEN_COMMANDS: frozenset[str] = frozenset({
    "rm", "rmdir", "mv", "cp", "touch", "ln", "mkdir",
    "chmod", "chown", "chgrp",
    "dd", "mkfs", "fdisk", "parted", "mkswap", "swapon", "swapoff",
    "mount", "umount",
    "shutdown", "reboot", "halt", "poweroff", "systemctl", "service",
    "useradd", "userdel", "usermod", "groupadd", "groupdel", "passwd",
    "kill", "killall", "pkill",
    "sudo", "su",
}) | DIRECTORY_CHANGE_COMMANDS

# 後続のコマンドを実行するラッパー
_WRAPPER_COMMANDS = frozenset({
    "env", "time", "timeout", "nice", "nohup", "xargs", "command", "exec",
})

# sh -c は改行もコマンドの区切りとして扱う
_LINE_BREAKS = "\n\r"
_PUNCTUATION = frozenset("();<>|&" + _LINE_BREAKS)
_SEGMENT_SEPARATORS = frozenset({
    "&&", "||", ";", "|", "&", "|&", ";;", "(", ")", *_LINE_BREAKS,
})
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_FD_DUP_OPERATORS = frozenset({">&", "<&"})
_FD_TARGET_RE = re.compile(r"^(\d+|-)$")

_READ_ONLY_GIT_HINT = "Use 'git status', 'git log', 'git diff' or 'git show' to inspect the repository"

# サブコマンド -> 拒否理由
_GIT_FORBIDDEN_SUBCOMMANDS: dict[str, str] = {
    "push": "'git push' sends data to remote repositories (network operation)",
    "pull": "'git pull' fetches data from remote repositories (network operation)",
    "fetch": "'git fetch' fetches data from remote repositories (network operation)",
    "clone": "'git clone' downloads repositories and creates directories",
    "clean": "'git clean' deletes untracked files",
    "submodule": "'git submodule' can fetch from remote repositories",
    "filter-branch": "'git filter-branch' rewrites repository history",
    "gc": "'git gc' rewrites repository storage",
    "prune": "'git prune' deletes repository objects",
    "update-ref": "'git update-ref' rewrites references",
    "send-email": "'git send-email' sends data over the network",
    "apply": "'git apply' modifies the working tree",
    "am": "'git am' modifies the repository",
    "cherry-pick": "'git cherry-pick' modifies the repository",
    "revert": "'git revert' modifies the repository",
    "commit": "'git commit' modifies the repository",
    "merge": "'git merge' modifies history and repository state",
    "rebase": "'git rebase' modifies history and repository state",
    "init": "'git init' creates a repository",
    "add": "'git add' modifies the index",
    "rm": "'git rm' deletes files",
    "mv": "'git mv' moves files",
    "restore": "'git restore' discards working tree changes",
    "switch": "'git switch' changes branches",
}

# サブコマンド -> (危険なオプション, 拒否理由)
_GIT_FORBIDDEN_OPTIONS: dict[str, tuple[frozenset[str], str]] = {
    "reset": (
        frozenset({"--hard", "--mixed"}),
        "'git reset' with --hard/--mixed discards changes",
    ),
    "checkout": (
        frozenset({"-f", "--force", "-b", "-B", "--"}),
        "'git checkout' changes branches or overwrites the working tree",
    ),
    "branch": (
        frozenset({"-d", "-D", "-m", "-M", "--delete", "--move"}),
        "'git branch' with delete/rename options modifies branches",
    ),
    "remote": (
        frozenset({"add", "set-url", "remove", "rm"}),
        "modifying git remotes could redirect pushes to unauthorized servers",
    ),
    "tag": (frozenset({"-d", "--delete"}), "'git tag -d' deletes tags"),
}

_GIT_OPTIONS_WITH_VALUE = frozenset({"-C", "-c", "--git-dir", "--work-tree", "--namespace"})

# find の引数で別のコマンドを実行するアクション
_FIND_EXEC_ACTIONS = frozenset({"-exec", "-execdir", "-ok", "-okdir"})
_FIND_EXEC_TERMINATORS = frozenset({";", "+"})
# find の引数でファイルを変更するアクション
_FIND_WRITE_ACTIONS = frozenset({"-delete", "-fprint", "-fprint0", "-fprintf", "-fls"})


class CommandParseError(ValueError):
    """コマンドラインをトークン化できない場合の例外."""


@dataclass
class _Segment:
    """制御演算子で区切られた1つの単純コマンド."""

    words: list[str] = field(default_factory=list)
    path_candidates: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(self.words)


@dataclass
class _ParsedCommand:
    segments: list[_Segment]
    forbidden_reasons: list[str]
    has_expansion: bool


def _tokenize(command: str) -> list[str]:
    lexer = shlex.shlex(
        command, posix=True, punctuation_chars="();<>|&" + _LINE_BREAKS
    )
    lexer.whitespace = " \t"
    lexer.whitespace_split = True
    lexer.commenters = ""
    try:
        return list(lexer)
    except ValueError as e:
        msg = f"Cannot parse command: {e}"
        raise CommandParseError(msg) from e


def _parse(command: str) -> _ParsedCommand:
    tokens = _tokenize(command)
    segments: list[_Segment] = [_Segment()]
    forbidden: list[str] = []
    i = 0
    while i < len(tokens):
        token = tokens[i]
        current = segments[-1]
        is_operator = set(token) <= _PUNCTUATION
        if token in _SEGMENT_SEPARATORS:
            segments.append(_Segment())
        elif is_operator and "<<" in token:
            forbidden.append("Here-documents (<<) are not allowed")
            i += 1  # 区切り文字列を読み飛ばす
        elif token in _FD_DUP_OPERATORS:
            # 2>&1 のようなファイルディスクリプタの複製
            if current.words and current.words[-1].isdigit():
                current.words.pop()
            if i + 1 < len(tokens) and _FD_TARGET_RE.match(tokens[i + 1]):
                i += 1
            else:
                forbidden.append("Output redirection to files (>&) is not allowed")
        elif is_operator and ">" in token:
            forbidden.append(
                f"Output redirection ({token}) is not allowed; "
                "use write_file to create or modify files"
            )
        elif token == "<":
            if current.words and current.words[-1].isdigit():
                current.words.pop()
            if i + 1 < len(tokens):
                current.path_candidates.append(tokens[i + 1])
                i += 1
        elif is_operator:
            segments.append(_Segment())
        else:
            current.words.append(token)
        i += 1

    return _ParsedCommand(
        segments=[s for s in segments if s.words],
        forbidden_reasons=forbidden,
        has_expansion="$" in command or "`" in command,
    )


def _effective_commands(words: list[str]) -> tuple[list[str], list[str]]:
    """
    代入とラッパーを読み飛ばし、実行されるコマンド名と引数を返す.

    Returns:
        (コマンド名のリスト, 最後のコマンドの引数)
    """
    idx = 0
    while idx < len(words) and _ASSIGNMENT_RE.match(words[idx]):
        idx += 1

    names: list[str] = []
    while idx < len(words):
        name = os.path.basename(words[idx])
        names.append(name)
        idx += 1
        if name not in _WRAPPER_COMMANDS:
            break
        while idx < len(words) and (
            words[idx].startswith("-") or _ASSIGNMENT_RE.match(words[idx])
        ):
            idx += 1
        if name == "timeout" and idx < len(words):
            idx += 1  # 制限時間
    return names, words[idx:]


def _find_actions(args: list[str]) -> tuple[list[list[str]], list[str]]:
    """
    find の引数から、実行されるコマンドとファイルを変更するアクションを取り出す.

    Returns:
        (-exec 系で実行されるコマンドの単語列のリスト, 変更系アクションのリスト)
    """
    commands: list[list[str]] = []
    writes: list[str] = []
    idx = 0
    while idx < len(args):
        arg = args[idx]
        idx += 1
        if arg in _FIND_EXEC_ACTIONS:
            words: list[str] = []
            while idx < len(args) and args[idx] not in _FIND_EXEC_TERMINATORS:
                words.append(args[idx])
                idx += 1
            idx += 1
            if words:
                commands.append(words)
        elif arg in _FIND_WRITE_ACTIONS:
            writes.append(arg)
    return commands, writes


def _git_rejection(args: list[str]) -> str | None:
    idx = 0
    while idx < len(args) and args[idx].startswith("-"):
        idx += 2 if args[idx] in _GIT_OPTIONS_WITH_VALUE else 1
    if idx >= len(args):
        return None
    subcommand, rest = args[idx], args[idx + 1 :]

    if subcommand == "stash":
        if rest and rest[0] in {"list", "show"}:
            return None
        return "'git stash' (without list/show) modifies repository state"
    if subcommand in _GIT_FORBIDDEN_SUBCOMMANDS:
        return _GIT_FORBIDDEN_SUBCOMMANDS[subcommand]
    if subcommand in _GIT_FORBIDDEN_OPTIONS:
        options, reason = _GIT_FORBIDDEN_OPTIONS[subcommand]
        if any(arg in options for arg in rest):
            return reason
    return None


def _bash_rule_rank(rule: PermissionRule) -> tuple[int, int, int, int]:
    """完全一致 > グロブ > ``name:*`` の順で、同順位はローカル、次に Deny を優先する."""
    pattern = rule.pattern
    if pattern.endswith(":*"):
        form = 0
    elif has_glob(pattern):
        form = 1
    else:
        form = 2
    return (
        form,
        len(pattern),
        1 if rule.scope is RuleScope.LOCAL else 0,
        1 if rule.decision is Decision.DENY else 0,
    )


def bash_rule_matches(rule: PermissionRule, command: str) -> bool:
    """Bashルールがコマンド文字列に一致する場合 True."""
    pattern = rule.pattern
    if pattern.endswith(":*"):
        prefix = pattern[:-2].strip()
        return command == prefix or command.startswith(prefix + " ")
    if has_glob(pattern):
        return fnmatch.fnmatchcase(command, pattern)
    return command == pattern


class BashClassifier:
    """シェルコマンドを Allowed / Forbidden / Ask に分類する."""

    def __init__(self, engine: PermissionEngine) -> None:
        """
        Initialize BashClassifier.

        Args:
            engine: パス引数の判定に使うパーミッションエンジン
        """
        self._engine = engine

    def _best_rule(self, command: str) -> PermissionRule | None:
        matched = [
            r
            for r in self._engine.rule_store.rules_for(RuleKind.BASH)
            if bash_rule_matches(r, command)
        ]
        if not matched:
            return None
        return max(matched, key=_bash_rule_rank)

    def _looks_like_path(self, arg: str) -> bool:
        if not arg or arg.startswith("-") or "://" in arg:
            return False
        if "/" in arg or arg.startswith((".", "~")):
            return True
        try:
            return (self._engine.workspace_root / arg).exists()
        except OSError:
            return False

    def _path_candidates(self, segment: _Segment, args: list[str]) -> list[str]:
        candidates = list(segment.path_candidates)
        # パスで指定された実行ファイル（例: ../tool.sh）
        command_words = segment.words[: len(segment.words) - len(args)]
        candidates.extend(
            w for w in command_words if "/" in w and not _ASSIGNMENT_RE.match(w)
        )
        for arg in args:
            if arg.startswith("--") and "=" in arg:
                arg = arg.split("=", 1)[1]
            if self._looks_like_path(arg):
                candidates.append(arg)
        return candidates

    def _rule_verdict(self, rule: PermissionRule) -> tuple[BashTier, str, str | None]:
        tier = _tier_for(rule.decision)
        if tier is BashTier.FORBIDDEN:
            source = self._engine.rule_store.source_of(rule)
            return (
                tier,
                f"Command is denied by rule {rule.to_entry()} in {source}",
                f'Remove "{rule.to_entry()}" from permissions.deny in {source}',
            )
        return tier, f"Matched rule {rule.to_entry()}", None

    def classify(self, command_line: str) -> BashClassification:
        """
        コマンドラインを分類する.

        判定順序:
        1. 構文上のサンドボックス違反（リダイレクト、ディレクトリ移動、
           禁止コマンド、危険な git 操作、ワークスペース外や Deny 対象のパス引数）は常に Forbidden
        2. コマンドライン全体に完全一致する Bash ルール
        3. セグメントごとの Bash ルール、組み込みの許可リスト、それ以外は Ask

        Args:
            command_line: モデルが要求したシェルコマンド

        Returns:
            分類結果
        """
        command = command_line.strip()
        if not command:
            return self._result(command, BashTier.FORBIDDEN, "Empty command")
        try:
            parsed = _parse(command)
        except CommandParseError as e:
            return self._result(command, BashTier.FORBIDDEN, str(e))
        if not parsed.segments:
            return self._result(command, BashTier.FORBIDDEN, "No command to execute")

        names: list[str] = []
        path_args: list[str] = []
        forbidden = list(parsed.forbidden_reasons)
        hint: str | None = None
        per_segment: list[tuple[_Segment, list[str]]] = []

        for segment in parsed.segments:
            seg_names, args = _effective_commands(segment.words)
            invocations = [(seg_names, args)]
            if seg_names and seg_names[-1] == "find":
                nested, writes = _find_actions(args)
                invocations.extend(_effective_commands(words) for words in nested)
                seg_names = [n for inv_names, _ in invocations for n in inv_names]
                for action in writes:
                    forbidden.append(f"'find {action}' modifies files and is always blocked")
                    hint = "Use delete_file or write_file instead"
            names.extend(seg_names)
            per_segment.append((segment, seg_names))

            for name in seg_names:
                if name in DIRECTORY_CHANGE_COMMANDS:
                    forbidden.append(
                        f"Directory change ('{name}') is not allowed; "
                        "commands always run in the workspace root"
                    )
                elif name in FORBIDDEN_COMMANDS:
                    forbidden.append(
                        f"'{name}' is a destructive or privileged command and is always blocked"
                    )
                    hint = (
                        "Use the file tools (write_file, delete_file, move_file, "
                        "copy_file, create_directory) instead"
                    )

            for inv_names, inv_args in invocations:
                if inv_names and inv_names[-1] == "git":
                    reason = _git_rejection(inv_args)
                    if reason is not None:
                        forbidden.append(reason)
                        hint = _READ_ONLY_GIT_HINT

            for candidate in self._path_candidates(segment, args):
                path_args.append(candidate)
                decision = self._engine.evaluate(candidate)
                if not decision.inside_workspace:
                    forbidden.append(
                        f"Path argument '{candidate}' resolves outside the workspace; "
                        "bash commands are restricted to the workspace even when "
                        "read access is granted"
                    )
                elif decision.canonical_path is not None and self._engine.is_protected(
                    decision.canonical_path
                ):
                    forbidden.append(
                        f"Path argument '{candidate}' refers to the agent's own state "
                        "(permission rules and sessions), which commands may not touch"
                    )
                elif not decision.allowed:
                    forbidden.append(decision.reason)
                    hint = decision.hint

        extra = {"path_arguments": tuple(path_args), "command_names": tuple(names)}

        if forbidden:
            return self._result(
                command, BashTier.FORBIDDEN, "; ".join(forbidden), hint=hint, **extra
            )

        whole = self._best_rule(command)
        if whole is not None and _bash_rule_rank(whole)[0] == 2:
            tier, reason, rule_hint = self._rule_verdict(whole)
            return self._result(
                command, tier, reason, matched_rule=whole, hint=rule_hint, **extra
            )

        verdicts: list[tuple[BashTier, str, PermissionRule | None, str | None]] = []
        for segment, seg_names in per_segment:
            rule = self._best_rule(segment.text)
            if rule is not None:
                tier, reason, rule_hint = self._rule_verdict(rule)
                verdicts.append((tier, reason, rule, rule_hint))
            elif seg_names and all(n in ALLOWED_COMMANDS for n in seg_names):
                verdicts.append((BashTier.ALLOWED, "Built-in allowed command", None, None))
            else:
                unknown = next((n for n in seg_names if n not in ALLOWED_COMMANDS), "")
                verdicts.append((
                    BashTier.ASK,
                    f"'{unknown}' is not in the allowed command list",
                    None,
                    None,
                ))

        for wanted in (BashTier.FORBIDDEN, BashTier.ASK):
            for tier, reason, rule, rule_hint in verdicts:
                if tier is wanted:
                    return self._result(
                        command, tier, reason, matched_rule=rule, hint=rule_hint, **extra
                    )

        if parsed.has_expansion:
            return self._result(
                command,
                BashTier.ASK,
                "Shell expansion ($, backticks) cannot be verified statically",
                **extra,
            )
        rule = next((r for _, _, r, _ in verdicts if r is not None), None)
        return self._result(
            command, BashTier.ALLOWED, verdicts[0][1], matched_rule=rule, **extra
        )

    def _result(
        self,
        command: str,
        tier: BashTier,
        reason: str,
        *,
        matched_rule: PermissionRule | None = None,
        hint: str | None = None,
        path_arguments: tuple[str, ...] = (),
        command_names: tuple[str, ...] = (),
    ) -> BashClassification:
        if tier is BashTier.FORBIDDEN:
            logger.warning("Command forbidden", command=command, reason=reason)
        else:
            logger.debug("Command classified", command=command, tier=tier.value)
        return BashClassification(
            raw_command=command,
            tier=tier,
            reason=reason,
            path_arguments=path_arguments,
            command_names=command_names,
            matched_rule=matched_rule,
            hint=hint,
        )


def _tier_for(decision: Decision) -> BashTier:
    return {
        Decision.ALLOW: BashTier.ALLOWED,
        Decision.DENY: BashTier.FORBIDDEN,
        Decision.ASK: BashTier.ASK,
    }[decision]


def suggest_rule_pattern(classification: BashClassification, *, as_pattern: bool) -> str:
    """
    「記憶する」選択時に保存するBashルールのパターンを返す.

    Args:
        classification: 分類結果
        as_pattern: True の場合はコマンド名のワイルドカード（``name:*``）

    Returns:
        ルールパターン
    """
    if as_pattern and classification.command_names:
        return f"{classification.command_names[0]}:*"
    return classification.raw_command
