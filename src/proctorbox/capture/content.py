"""Heuristics deciding whether the editor shows meaningful work."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

CODE_EXTENSIONS = (
    ".js", ".py", ".java", ".cpp", ".html", ".css", ".json", ".md", ".ts",
    ".jsx", ".tsx", ".php", ".rb", ".go", ".rs", ".c", ".h", ".hpp",
)

PLACEHOLDER_MARKERS = ("Get Started", "Welcome", "Choose a language")

CODE_TOKENS = (
    "function", "console.log", "print(", "public class", "#include",
    "def ", "=", "{", ";",
)

SUBJECT_EXTENSIONS = {
    "javascript": "js",
    "python": "py",
    "java": "java",
    "c++": "cpp",
}

PLACEHOLDER_SOURCES = {
    "js": (
        "// Workspace snapshot\n"
        "function sum(values) {\n"
        "  return values.reduce((a, b) => a + b, 0);\n"
        "}\n"
        "console.log(sum([1, 2, 3]));\n"
    ),
    "py": (
        "# Workspace snapshot\n"
        "def total(values):\n"
        "    return sum(values)\n\n"
        "print(total([1, 2, 3]))\n"
    ),
    "java": (
        "// Workspace snapshot\n"
        "public class Main {\n"
        "    public static void main(String[] args) {\n"
        "        System.out.println(1 + 2 + 3);\n"
        "    }\n"
        "}\n"
    ),
    "cpp": (
        "// Workspace snapshot\n"
        "#include <iostream>\n"
        "int main() {\n"
        "    std::cout << 1 + 2 + 3 << std::endl;\n"
        "    return 0;\n"
        "}\n"
    ),
}

# Collects everything the classifier needs in one round trip.
SNAPSHOT_SCRIPT = """
() => {
  const text = (el) => (el && el.textContent ? el.textContent.trim() : "");
  const active = document.querySelector(
    '.monaco-editor.focused .view-lines, .tab.active .label-name, .tab[aria-selected="true"] .label-name'
  );
  return {
    editors: Array.from(document.querySelectorAll('.monaco-editor .view-lines')).map(text),
    tabs: Array.from(document.querySelectorAll('.tab .label-name')).map(text),
    activeTab: text(document.querySelector('.tab.active .label-name, .tab[aria-selected="true"] .label-name')),
    terminals: Array.from(document.querySelectorAll('.terminal .xterm-screen')).map(text),
    workbench: !!document.querySelector('.monaco-workbench'),
    explorer: !!document.querySelector('.explorer-viewlet, .activitybar'),
    focused: !!active,
  };
}
"""

EXPLORER_FILES_SCRIPT = """
() => {
  const selectors = [
    '.explorer-viewlet .monaco-list-row .label-name',
    '.explorer-viewlet .monaco-tree-row .label-name',
    '.explorer-folders-view .monaco-list-row .label-name',
    '.pane-body .monaco-list-row .label-name',
  ];
  for (const selector of selectors) {
    const names = Array.from(document.querySelectorAll(selector))
      .map((el) => (el.textContent || "").trim())
      .filter(Boolean);
    if (names.length) return names;
  }
  return [];
}
"""

DISMISS_OVERLAYS_SCRIPT = """
() => {
  let closed = 0;
  document.querySelectorAll('.notifications-toasts .notification-toast .codicon-close').forEach((btn) => {
    btn.click();
    closed++;
  });
  document.querySelectorAll('.tab').forEach((tab) => {
    const label = tab.textContent || "";
    if (label.includes('Get Started') || label.includes('Welcome')) {
      const close = tab.querySelector('.codicon-close, [aria-label*="Close"]');
      if (close) { close.click(); closed++; }
    }
  });
  return closed;
}
"""

FOCUS_EDITOR_SCRIPT = """
() => {
  const tabs = Array.from(document.querySelectorAll('.tab'));
  const real = tabs.filter((t) => !/Get Started|Welcome/.test(t.textContent || ""));
  const target = real.find((t) => t.classList.contains('active')) || real[real.length - 1];
  if (target) target.click();
  const input = document.querySelector('.monaco-editor textarea, .monaco-editor .inputarea');
  if (input) input.focus();
  return !!target;
}
"""


@dataclass(frozen=True)
class ContentVerdict:
    """Outcome of one verification pass.

    ``kind`` is one of ``monaco-code``, ``code-file``, ``terminal``,
    ``workspace`` or ``none``. Only the first two count as visible work.
    """
    found: bool
    kind: str = "none"
    excerpt: str = ""

    @property
    def has_code(self) -> bool:
        return self.kind in ("monaco-code", "code-file")


NO_CONTENT = ContentVerdict(found=False)


def is_placeholder_text(text: str) -> bool:
    return any(marker in text for marker in PLACEHOLDER_MARKERS)


def is_placeholder_tab(label: str) -> bool:
    return not label.strip() or is_placeholder_text(label)


def looks_like_code(text: str) -> bool:
    text = text.strip()
    if len(text) <= 10 or is_placeholder_text(text):
        return False
    return any(token in text for token in CODE_TOKENS)


def is_code_file(name: str) -> bool:
    return name.lower().endswith(CODE_EXTENSIONS)


def classify_snapshot(snapshot: dict[str, Any]) -> ContentVerdict:
    editors = [t for t in snapshot.get("editors") or [] if t]
    for text in editors:
        if looks_like_code(text):
            return ContentVerdict(True, "monaco-code", text[:100])

    tabs = snapshot.get("tabs") or []
    if any(is_code_file(t) for t in tabs):
        for text in editors:
            if len(text) > 5:
                return ContentVerdict(True, "code-file", text[:100])

    for text in snapshot.get("terminals") or []:
        if len(text) > 10:
            return ContentVerdict(True, "terminal", text[:100])

    if snapshot.get("workbench") and snapshot.get("explorer"):
        return ContentVerdict(True, "workspace", "editor workspace loaded")
    return NO_CONTENT


def needs_file(snapshot: dict[str, Any]) -> bool:
    """True when no real file is open or the open editor is a placeholder."""
    tabs = snapshot.get("tabs") or []
    if not any(not is_placeholder_tab(t) for t in tabs):
        return True
    editors = [t for t in snapshot.get("editors") or [] if t]
    if not editors:
        return True
    content = editors[0]
    return len(content) < 20 or is_placeholder_text(content)


def pick_target_file(files: Iterable[str], owner_hints: Iterable[str] = ("student",)) -> Optional[str]:
    """Most relevant existing file: owner-associated code files, then code files, then anything."""
    unique = list(dict.fromkeys(f for f in files if f))
    if not unique:
        return None
    code_files = [f for f in unique if is_code_file(f)]
    hints = [h.lower() for h in owner_hints if h]
    for name in code_files:
        if any(h in name.lower() for h in hints):
            return name
    if code_files:
        return code_files[0]
    return unique[0]


def extension_for(subject_label: str) -> str:
    return SUBJECT_EXTENSIONS.get(subject_label.strip().lower(), "js")


def placeholder_source(subject_label: str) -> str:
    return PLACEHOLDER_SOURCES[extension_for(subject_label)]


def placeholder_filename(subject_label: str) -> str:
    return f"student_work.{extension_for(subject_label)}"
