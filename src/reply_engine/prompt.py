"""Build the system and user blocks for one generation request."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .models import Kind, MemorySnapshot, Message, Sender

PROTOCOL_GUIDE = """\
You are chatting on a phone messenger. Reply like a real person typing:
short lines, one bubble per line, casual tone.

Formatting you may use, one per line:
- [VOICE] words            send a voice message; an optional (sound description)
                           may follow the tag, e.g. [VOICE](sighs) fine then
- [EMOJI:key]              send a sticker from the catalog{catalog}

If the character cannot answer right now, output ONLY one of these and nothing else:
- [BUSY:N]                 busy, reachable again in N minutes (1-10)
- [NO_REPLY:reason]        reads the message but does not answer"""


class PersonaBook:
    """Opaque persona/world context per conversation, owned by another component."""

    def __init__(self, personas: Optional[Mapping[str, str]] = None, default: str = "") -> None:
        self._personas = dict(personas or {})
        self.default = default

    def __call__(self, conversation_id: str) -> str:
        return str(self._personas.get(conversation_id, self.default) or "")

    def set(self, conversation_id: str, context: str) -> None:
        self._personas[conversation_id] = context

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "PersonaBook":
        return cls((cfg or {}).get("personas") or {}, str((cfg or {}).get("default_persona") or ""))


def render_line(m: Message) -> str:
    who = {Sender.USER: "User", Sender.CHARACTER: "Me", Sender.SYSTEM: "System"}[m.sender]
    if m.kind is Kind.VOICE:
        return f"{who}: [voice {m.voice_duration}s] {m.text}"
    if m.kind is Kind.EMOJI:
        return f"{who}: [sticker {m.emoji_key}]"
    return f"{who}: {m.text}"


def build_system_prompt(
    persona: str,
    context: Sequence[Message],
    snapshots: Sequence[MemorySnapshot] = (),
    emoji_keys: Sequence[str] = (),
) -> str:
    catalog = f" ({', '.join(emoji_keys)})" if emoji_keys else ""
    parts: List[str] = []
    if persona.strip():
        parts.append(persona.strip())
    parts.append(PROTOCOL_GUIDE.format(catalog=catalog))
    if snapshots:
        mem = "\n".join(f"- {s.title}: {s.summary_text}" for s in snapshots)
        parts.append("Things you remember from earlier:\n" + mem)
    history = "\n".join(render_line(m) for m in context)
    parts.append("Recent chat:\n" + (history or "(no messages yet)"))
    return "\n\n".join(parts)


def build_user_prompt(pending: Sequence[str]) -> str:
    numbered = "\n".join(f"{i}. {t}" for i, t in enumerate(pending, 1))
    return (
        f"They just sent {len(pending)} message(s). Answer all of them together, "
        f"not only the last one:\n{numbered}"
    )
