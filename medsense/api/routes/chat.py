import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from medsense.core.pipeline.retrieval import RetrievalPipeline
from medsense.models.query import ChatRequest

router = APIRouter()
logger = logging.getLogger(__name__)

def get_retrieval_pipeline(request: Request) -> RetrievalPipeline:
    return request.app.state.retrieval_pipeline

@router.post("/chat", summary="Ask a question about the uploaded reports")
async def chat(
    request_data: ChatRequest,
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline)
):
    if not request_data.message.strip():
        return JSONResponse(status_code=400, content={"error": "Message is required."})

    logger.info(f"Chat question: '{request_data.message}' ({len(request_data.history)} prior turns)")
    response = await pipeline.run(request_data)
    if response.error:
        return JSONResponse(status_code=500, content={"error": response.error})
    return {"answer": response.answer}
