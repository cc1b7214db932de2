from typing import Iterable, List, Optional
from medsense.config.settings import settings
from medsense.models.query import AssembledContext, ChatTurn

SYSTEM_PROMPT = """You are a careful assistant answering questions about the user's own medical reports.
Rules:
1. Answer only from the context. If the answer is not there, say you don't have that information.
2. Only cite documents from the known file list below. Never invent a file name.
3. Only cite dates from the available dates list below. Never guess or shift a date.
4. For lab values, answer with a table: one row per distinct date, one column per value, no duplicate rows.
5. A date marked "(from filename)" is the report date for every value in that block.
6. Give the same answer every time the same question is asked about the same reports.
Do not offer a diagnosis or treatment advice."""

ALLOWED_HISTORY_ROLES = {"user", "assistant"}


class PromptBuilder:
    @staticmethod
    def build_system_prompt(document_names: Iterable[str], available_dates: Iterable[str]) -> str:
        files = "\n".join(f"- {name}" for name in sorted(set(document_names))) or "- (none)"
        dates = ", ".join(available_dates) or "(none)"
        return f"{SYSTEM_PROMPT}\n\nKnown files:\n{files}\n\nAvailable dates: {dates}"

    @staticmethod
    def build_messages(question: str,
                       context: AssembledContext,
                       history: Optional[List[ChatTurn]] = None,
                       document_names: Iterable[str] = (),
                       max_history_turns: Optional[int] = None) -> list[dict]:
        """
        Compiles the constraints, prior turns and assembled context into chat
        messages. Identical inputs always produce identical messages.
        """
        limit = settings.retrieval.max_history_turns if max_history_turns is None else max_history_turns

        messages = [{
            "role": "system",
            "content": PromptBuilder.build_system_prompt(document_names, context.available_dates)
        }]

        turns = [t for t in (history or []) if t.role in ALLOWED_HISTORY_ROLES and t.content.strip()]
        if limit > 0:
            for turn in turns[-limit:]:
                messages.append({"role": turn.role, "content": turn.content})

        user_content = f"Context:\n---\n{context.text}\n---\nQuestion: {question}"
        messages.append({"role": "user", "content": user_content})
        return messages
