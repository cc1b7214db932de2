import logging
from decimal import Decimal
from typing import List, Optional, Tuple
from medsense.config.settings import RetrievalConfig, settings
from medsense.core.embed.embedder import BaseEmbedder
from medsense.core.generate.answer_validator import AnswerValidator
from medsense.core.generate.llm_client import LLMClient
from medsense.core.generate.prompt_builder import PromptBuilder
from medsense.core.retrieve.context_builder import ContextAssembler
from medsense.core.retrieve.query_analyser import QueryAnalyser
from medsense.core.retrieve.ranker import HybridRanker
from medsense.models.query import AssembledContext, ChatRequest, ChatResponse, ChatResult
from medsense.storage.base import RecordStore

logger = logging.getLogger(__name__)

NO_INFORMATION_ANSWER = "I don't have information in your uploaded reports to answer that."
GENERIC_ERROR = "Sorry, something went wrong while answering your question. Please try again."

class RetrievalPipeline:
    """
    Orchestrator for chat questions.
    Sequence: load corpus -> analyse -> embed query -> score -> select
    -> relevance floor -> assemble context -> build prompt -> complete -> validate

    The corpus is only read, so concurrent questions need no locking.
    """

    def __init__(self,
                 record_store: RecordStore,
                 embedder: BaseEmbedder,
                 llm_client: LLMClient,
                 analyser: Optional[QueryAnalyser] = None,
                 ranker: Optional[HybridRanker] = None,
                 assembler: Optional[ContextAssembler] = None,
                 validator: Optional[AnswerValidator] = None,
                 config: Optional[RetrievalConfig] = None):
        self.record_store = record_store
        self.embedder = embedder
        self.llm_client = llm_client
        self.config = config or settings.retrieval
        self.analyser = analyser or QueryAnalyser()
        self.ranker = ranker or HybridRanker(self.config)
        self.assembler = assembler or ContextAssembler(self.config)
        self.validator = validator or AnswerValidator()
        self.prompt_builder = PromptBuilder()

    async def prepare(self, request: ChatRequest) -> Optional[Tuple[AssembledContext, List[dict]]]:
        """
        Everything up to the model call. Returns None when there is nothing
        relevant to answer from.
        """
        question = request.message
        chunks = await self.record_store.list_chunks()
        if not chunks:
            logger.info("No chunks in the corpus; answering without the model")
            return None

        document_names = sorted({c.document_name for c in chunks})
        analysis = self.analyser.analyse(question, document_names)
        logger.info(f"Question intent: {analysis.intent.kind} ({len(chunks)} chunks in corpus)")

        query_vector = await self.embedder.embed_query(question)
        scored = self.ranker.score(query_vector, analysis, chunks)
        selection = self.ranker.select(scored, analysis)
        if not selection.chunks:
            return None

        floor = Decimal(str(self.config.min_relevance_score))
        if selection.mode == "balanced" and selection.chunks[0].score < floor:
            logger.info(f"Best score {selection.chunks[0].score} is below the relevance floor {floor}")
            return None

        context = self.assembler.assemble(selection)
        if not context.blocks:
            return None

        messages = self.prompt_builder.build_messages(
            question, context, request.history, document_names, self.config.max_history_turns
        )
        return context, messages

    async def answer(self, request: ChatRequest) -> ChatResult:
        prepared = await self.prepare(request)
        if prepared is None:
            return ChatResult(answer=NO_INFORMATION_ANSWER, grounded=False)

        context, messages = prepared
        answer = await self.llm_client.complete(messages)
        validation = self.validator.validate(answer, context.available_dates)
        return ChatResult(answer=answer, messages=messages, context=context, validation=validation)

    async def run(self, request: ChatRequest) -> ChatResponse:
        """Never raises: any failure becomes a generic error response."""
        try:
            result = await self.answer(request)
        except Exception:
            logger.exception("Chat request failed")
            return ChatResponse(error=GENERIC_ERROR)
        return ChatResponse(answer=result.answer)
