"""
Prompt Templates
================

Reusable system prompts kept as plain text files:

    Prompts/
        LLMPrompts/*.txt     templates for text input
        VLMPrompts/*.txt     templates for image input
        PromptConfig.txt     which template fills which slot

PromptConfig.txt holds `slot=file name` lines, e.g. `LLMPrompt1=translate.txt`.
A slot with no (or a stale) entry falls back to the template at its default
position in the sorted directory listing, then to the first template.

A template run is one-shot: the template is the system message, the user's
text or image is the only other message, and the answer is streamed back.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from chat_session import Message, Role

logger = logging.getLogger(__name__)

DEFAULT_PROMPTS_DIR = "Prompts"
CONFIG_FILE = "PromptConfig.txt"
TEMPLATE_SUFFIX = ".txt"


class PromptKind(Enum):
    LLM = "LLMPrompts"
    VLM = "VLMPrompts"


# Slot name -> (kind, default position)
SLOTS = {
    "LLMPrompt1": (PromptKind.LLM, 0),
    "LLMPrompt2": (PromptKind.LLM, 1),
    "VLMPrompt1": (PromptKind.VLM, 0),
    "VLMPrompt2": (PromptKind.VLM, 1),
}


class PromptNotFoundError(KeyError):
    """No template with that name in the requested directory."""


@dataclass
class PromptTemplate:
    name: str
    content: str
    kind: PromptKind
    path: Optional[Path] = None

    @property
    def filename(self) -> str:
        return self.name + TEMPLATE_SUFFIX


class PromptLibrary:
    """
    Templates on disk plus the slot selection.

    Args:
        root: Directory holding LLMPrompts/, VLMPrompts/ and PromptConfig.txt
    """

    def __init__(self, root: str = DEFAULT_PROMPTS_DIR):
        self.root = Path(root)
        self.templates: Dict[PromptKind, List[PromptTemplate]] = {kind: [] for kind in PromptKind}
        self.selection: Dict[str, str] = {}

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILE

    def load(self) -> "PromptLibrary":
        """(Re)read every template and the slot selection."""
        for kind in PromptKind:
            self.templates[kind] = self._load_kind(kind)
        self.selection = self._load_selection()
        logger.info(
            f"📝 Loaded {len(self.templates[PromptKind.LLM])} text and "
            f"{len(self.templates[PromptKind.VLM])} image prompt(s) from {self.root}"
        )
        return self

    def _load_kind(self, kind: PromptKind) -> List[PromptTemplate]:
        directory = self.root / kind.value
        if not directory.is_dir():
            return []

        templates = []
        for path in sorted(directory.glob("*" + TEMPLATE_SUFFIX)):
            try:
                templates.append(PromptTemplate(path.stem, path.read_text(encoding="utf-8"), kind, path))
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping prompt {path}: {e}")
        return templates

    def _load_selection(self) -> Dict[str, str]:
        if not self.config_path.is_file():
            return {}
        try:
            lines = self.config_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.warning(f"Could not read {self.config_path}: {e}")
            return {}

        selection = {}
        for line in lines:
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            selection[key.strip()] = value.strip()
        return selection

    def names(self, kind: PromptKind) -> List[str]:
        return [template.name for template in self.templates[kind]]

    def get(self, kind: PromptKind, name: str) -> PromptTemplate:
        """Look a template up by name, with or without the .txt suffix."""
        if name.endswith(TEMPLATE_SUFFIX):
            name = name[:-len(TEMPLATE_SUFFIX)]
        for template in self.templates[kind]:
            if template.name == name:
                return template
        raise PromptNotFoundError(f"No {kind.value} template named '{name}'")

    def current(self, slot: str) -> Optional[PromptTemplate]:
        kind, default_index = _slot(slot)
        templates = self.templates[kind]
        chosen = self.selection.get(slot)
        for template in templates:
            if template.filename == chosen:
                return template
        if len(templates) > default_index:
            return templates[default_index]
        return templates[0] if templates else None

    def select(self, slot: str, name: str) -> PromptTemplate:
        kind, _ = _slot(slot)
        template = self.get(kind, name)
        self.selection[slot] = template.filename
        return template

    def save_selection(self) -> Path:
        """Write the resolved slot selection to PromptConfig.txt."""
        lines = []
        for slot in SLOTS:
            template = self.current(slot)
            if template is not None:
                lines.append(f"{slot}={template.filename}")

        self.root.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        logger.info(f"💾 Prompt selection saved to {self.config_path}")
        return self.config_path


def _slot(slot: str):
    try:
        return SLOTS[slot]
    except KeyError:
        raise ValueError(f"Unknown prompt slot '{slot}', expected one of: {', '.join(SLOTS)}") from None


def build_messages(
    template: PromptTemplate,
    text: str = "",
    image: Optional[bytes] = None,
    mime_type: Optional[str] = None
) -> List[Dict[str, Any]]:
    return [
        Message(Role.SYSTEM, template.content).to_provider(),
        Message(Role.USER, text, data=image, mime_type=mime_type).to_provider(),
    ]


def stream_template(
    client,
    template: PromptTemplate,
    text: str = "",
    image: Optional[bytes] = None,
    mime_type: Optional[str] = None
) -> Iterator[str]:
    """
    Run a template once over `text` and/or `image` and stream the answer.

    Args:
        client: ModelClientWrapper; use the vision client for image input
        template: System prompt to apply
        text: User text (may be empty when an image is given)
        image: Raw image bytes, sent as a data URL
        mime_type: Image type, e.g. image/png

    Raises:
        ValueError: When there is neither text nor an image
    """
    if not text and image is None:
        raise ValueError("Nothing to run the prompt on: give text or an image")
    logger.info(f"Running prompt template {template.name}")
    return client.stream(build_messages(template, text, image, mime_type))
