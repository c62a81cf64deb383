"""
TwiML instruction documents returned to Twilio when it fetches call instructions.
"""


def _twiml(s: str) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>\n<Response>\n' + s + "\n</Response>"


def _xml_escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def build_instruction_document(audio_url: str, post_beep_delay: float = 0) -> str:
    """Pause (optional), play the recording, hang up.

    The document never depends on the answering machine detection result:
    with synchronous detection Twilio only fetches it once the greeting has
    ended, so the same playback suits humans and voicemail.
    """
    parts: list[str] = []
    if post_beep_delay > 0:
        parts.append(f'  <Pause length="{post_beep_delay:g}" />')
    parts.append(f"  <Play>{_xml_escape(audio_url)}</Play>")
    parts.append("  <Hangup />")
    return _twiml("\n".join(parts))
