"""
commands.py

Command tier classification for shell and AppleScript text.

Tiers:
- 1: read-only / inspection, always autonomous
- 2: recognised mutation category (approve once per session per category);
     "uncategorized" means no rule matched and the caller should escalate
- 3: dangerous, always confirmed with the exact command shown

The tables below are a closed, hand-reviewed set. Extending them is a code change.
Classification order (first hit wins):
  sensitive path -> tier-3 command -> tier-3 regex -> tier-2 category -> tier-1 allowlist -> uncategorized
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from src.shared.agent_config import AGENT_NAME


class Tier2Category(str, Enum):
    FILE_WRITES = "file_writes"
    NETWORK_ACCESS = "network_access"
    PACKAGE_INSTALLS = "package_installs"
    GIT_WRITES = "git_writes"
    APP_STATE_CHANGES = "app_state_changes"
    PROCESS_MANAGEMENT = "process_management"
    UNCATEGORIZED = "uncategorized"

    @property
    def approval_prompt(self) -> str:
        return f"{AGENT_NAME} wants to {_CATEGORY_PHRASES[self]}"


_CATEGORY_PHRASES = {
    Tier2Category.FILE_WRITES: "create/modify files",
    Tier2Category.NETWORK_ACCESS: "access the network",
    Tier2Category.PACKAGE_INSTALLS: "install/remove packages",
    Tier2Category.GIT_WRITES: "modify git repositories",
    Tier2Category.APP_STATE_CHANGES: "control applications",
    Tier2Category.PROCESS_MANAGEMENT: "manage running processes",
    Tier2Category.UNCATEGORIZED: "run an unrecognized command",
}


@dataclass(frozen=True)
class CommandTier:
    tier: int
    category: Optional[Tier2Category] = None
    reason: Optional[str] = None

    @classmethod
    def tier1(cls) -> "CommandTier":
        return cls(tier=1)

    @classmethod
    def tier2(cls, category: Tier2Category) -> "CommandTier":
        return cls(tier=2, category=category)

    @classmethod
    def tier3(cls, reason: str) -> "CommandTier":
        return cls(tier=3, reason=reason)


  
# Tier 3 tables
  

SENSITIVE_PATHS: List[str] = [
    "~/.ssh/", "~/.gnupg/", "~/.aws/",
    "~/library/keychains/",
    "/etc/", "/system/", "/usr/local/bin/",
    "/library/launchdaemons/", "/library/launchagents/",
    "~/library/launchagents/",
]

TIER3_COMMANDS: List[str] = [
    "rm ", "rm\t", "rmdir ", "unlink ",
    "sudo ", "su ", "doas ",
    "shutdown", "reboot", "halt", "poweroff",
    "mkfs", "format ", "diskutil erase", "diskutil partitiondisk", "dd ",
    "chmod -r", "chown -r",
    "kill -9", "kill -kill",
    "launchctl load", "launchctl unload", "launchctl bootstrap",
    "defaults write",
    "security ",
    "csrutil", "spctl", "codesign",
    "systemsetup", "networksetup",
]

TIER3_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(p, re.IGNORECASE), desc)
    for p, desc in [
        (r"\|\s*base64\s+-d\s*\|\s*(bash|sh|zsh|eval)", "Base64-encoded execution"),
        (r"\|\s*(bash|sh|zsh|eval)\s*$", "Pipe to shell"),
        (r"\$\(.*\).*>", "Command substitution in redirect"),
        (r"curl\s+.*\|\s*(bash|sh|eval)", "Remote code execution"),
        (r"wget\s+.*\|\s*(bash|sh|eval)", "Remote code execution"),
        (r"python[23]?\s+-c\s+.*(os\.|subprocess|shutil\.rmtree|eval|exec)", "Python arbitrary execution"),
        (r"perl\s+-e\s+.*(system|exec|unlink)", "Perl arbitrary execution"),
        (r"ruby\s+-e\s+.*(system|exec|FileUtils\.rm)", "Ruby arbitrary execution"),
        (r"\bdrop\s+(table|database|schema)\b", "Destructive SQL"),
        (r"\btruncate\s+table\b", "Destructive SQL"),
    ]
]


  
# Tier 2 tables
  

TIER2_CATEGORIES: List[Tuple[List[str], Tier2Category]] = [
    (["cp ", "mv ", "mkdir ", "touch ", "tee ", "rsync "], Tier2Category.FILE_WRITES),
    (["curl ", "wget ", "http ", "ssh ", "scp ", "sftp ", "ftp ", "nc ", "nmap ", "ping "],
     Tier2Category.NETWORK_ACCESS),
    (["brew install", "brew uninstall", "brew remove",
      "npm install", "npm uninstall", "npm i ",
      "pip install", "pip uninstall", "pip3 install", "pip3 uninstall",
      "gem install", "gem uninstall",
      "cargo install", "cargo uninstall",
      "apt install", "apt remove", "apt-get install", "apt-get remove",
      "port install", "port uninstall"], Tier2Category.PACKAGE_INSTALLS),
    (["git add", "git commit", "git push", "git merge", "git rebase",
      "git checkout", "git reset", "git stash", "git cherry-pick"], Tier2Category.GIT_WRITES),
    (["kill ", "killall ", "pkill "], Tier2Category.PROCESS_MANAGEMENT),
]


  
# Tier 1 allowlist
  

TIER1_COMMANDS: List[str] = [
    "ls", "cat", "head", "tail", "less", "wc", "file", "stat", "du", "df",
    "pwd", "cd", "echo", "date", "whoami", "uname", "which", "where", "type",
    "find", "locate", "mdfind",
    "grep", "rg", "ag", "ack",
    "ps", "top", "uptime", "sw_vers", "system_profiler",
    "git status", "git log", "git diff", "git branch", "git show", "git remote",
    "open ",
    "defaults read", "plutil",
    "mdls", "xattr", "otool",
    "man", "help",
]


  
# AppleScript tables
  

APPLESCRIPT_TIER3_VERBS = ["delete", "empty trash", "format", "erase"]
APPLESCRIPT_WRITE_VERBS = ["set", "make", "move", "duplicate", "activate", "save", "close"]
APPLESCRIPT_READ_VERBS = ["get", "count", "exists", "name of", "properties of", "bounds of"]

_DO_SHELL_SCRIPT = re.compile(r'do\s+shell\s+script\s+"([^"]+)"', re.IGNORECASE)


def _occurs_as_command(command: str, pattern: str) -> bool:
    """True when `pattern` starts the command or follows a separator (space, ;, &&, |)."""
    if command.startswith(pattern):
        return True
    return any(sep + pattern in command for sep in (" ", ";", "&&", "|"))


def _home() -> str:
    return os.path.expanduser("~").lower()


def _matches_sensitive_path(lower: str) -> bool:
    home = _home()
    expanded = lower.replace("~", home)
    return any(path.replace("~", home) in expanded for path in SENSITIVE_PATHS)


def _matches_tier3_command(lower: str) -> bool:
    return any(_occurs_as_command(lower, p) for p in TIER3_COMMANDS)


def _matches_tier3_regex(command: str) -> Optional[str]:
    for pattern, desc in TIER3_PATTERNS:
        if pattern.search(command):
            return desc
    return None


def _matches_tier2(lower: str) -> Optional[Tier2Category]:
    if ">" in lower:
        return Tier2Category.FILE_WRITES
    for prefixes, category in TIER2_CATEGORIES:
        if any(_occurs_as_command(lower, p) for p in prefixes):
            return category
    return None


def _starts_with_command(lower: str, cmd: str) -> bool:
    """`cmd` is the whole leading word(s) of the command, not a prefix of a longer name."""
    cmd = cmd.strip()
    return lower == cmd or lower.startswith(cmd + " ")


def _matches_tier1(lower: str) -> bool:
    for cmd in TIER1_COMMANDS:
        if _starts_with_command(lower, cmd):
            if cmd == "find" and ("-exec" in lower or "-delete" in lower):
                return False
            return True
    return lower.endswith("--help") or lower.endswith("--version")


def classify_command(command: str) -> CommandTier:
    """Classify a shell command string into a tier."""
    trimmed = command.strip()
    lower = trimmed.lower()

    if _matches_sensitive_path(lower):
        return CommandTier.tier3("Targets a sensitive path")

    if _matches_tier3_command(lower):
        return CommandTier.tier3("Destructive or dangerous command")

    if _matches_tier3_regex(trimmed) is not None:
        return CommandTier.tier3("Potentially dangerous pattern detected")

    category = _matches_tier2(lower)
    if category is not None:
        return CommandTier.tier2(category)

    if _matches_tier1(lower):
        return CommandTier.tier1()

    return CommandTier.tier2(Tier2Category.UNCATEGORIZED)


def classify_applescript(script: str) -> CommandTier:
    """
    Classify AppleScript source. An embedded `do shell script "..."` is classified as a
    shell command; a read-only inner command still counts as an application state change.
    """
    lower = script.lower()

    m = _DO_SHELL_SCRIPT.search(script)
    if m:
        inner = classify_command(m.group(1))
        if inner.tier == 1:
            return CommandTier.tier2(Tier2Category.APP_STATE_CHANGES)
        return inner

    for verb in APPLESCRIPT_TIER3_VERBS:
        if verb in lower:
            return CommandTier.tier3(f"AppleScript destructive verb: {verb}")

    if "system preferences" in lower or "system settings" in lower:
        return CommandTier.tier3("Modifying system configuration")

    if 'tell application "terminal"' in lower and "do script" in lower:
        return CommandTier.tier3("Arbitrary Terminal execution via AppleScript")

    if any(verb in lower for verb in APPLESCRIPT_WRITE_VERBS):
        return CommandTier.tier2(Tier2Category.APP_STATE_CHANGES)

    if any(verb in lower for verb in APPLESCRIPT_READ_VERBS):
        return CommandTier.tier1()

    return CommandTier.tier2(Tier2Category.APP_STATE_CHANGES)
