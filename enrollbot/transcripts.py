# enrollbot/transcripts.py

from enrollbot.entities import User
from enrollbot.enrollment import EnrollmentSummary
from enrollbot.i18n import Translator


class PlainTextTranscriptRenderer:
    """Default document builder for the transcript command: a UTF-8 text file."""

    mime_type = "text/plain"
    extension = "txt"

    def __init__(self, translator: Translator):
        self.translator = translator

    def render(self, user: User, summary: EnrollmentSummary, locale: str) -> bytes:
        t = lambda key, **kw: self.translator.translate(key, locale, **kw)
        lines = [
            t("transcript_title"),
            "",
            t("transcript_student", name=user.name, national_id=user.national_id),
            t("transcript_term", term=summary.term),
            "",
        ]
        for s in summary.subjects:
            lines.append(t("enrollment_line", name=s.name, code=s.code, credits=s.credits))
        lines.append("")
        lines.append(t("transcript_total", total_credits=summary.total_credits))
        return ("\n".join(lines) + "\n").encode("utf-8")
