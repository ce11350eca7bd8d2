from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from companion.application.bootstrap import CompanionContainer
from companion.domain.models.conversation import ReplyStatus, TokenUsage

router = APIRouter(prefix="/api/v1")


class MessageRequest(BaseModel):
    author_id: Optional[str] = Field(None, description="Platform user id of the sender")
    server_id: Optional[str] = Field(None, description="Community the conversation belongs to")
    content: str = Field(min_length=1)


class MessageResponse(BaseModel):
    status: ReplyStatus
    content: str = ""
    provider: Optional[str] = None
    model: Optional[str] = None
    usage: Optional[TokenUsage] = None


class MemoryItem(BaseModel):
    id: str
    content: str
    memory_type: str
    scope: str
    importance: float
    score: float


def get_container(request: Request) -> CompanionContainer:
    return request.app.state.container


Container = Annotated[CompanionContainer, Depends(get_container)]


# Inbound message for a conversation; dropped duplicates return status "dropped"
@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse)
async def post_message(conversation_id: str, body: MessageRequest, container: Container):
    reply = await container.orchestrator.handle_message(
        conversation_id,
        body.author_id,
        body.content,
        server_id=body.server_id
    )
    return MessageResponse(**reply.model_dump())


@router.get("/users/{user_id}/memories", response_model=List[MemoryItem])
async def list_user_memories(
    user_id: str,
    container: Container,
    query: Optional[str] = None,
    max_results: int = Query(10, ge=1, le=50)
):
    matches = await container.memory.query_user(user_id, query, max_results)
    return [
        MemoryItem(
            id=m.record.id,
            content=m.record.content,
            memory_type=m.record.memory_type.value,
            scope=m.scope.value,
            importance=m.record.importance,
            score=m.score
        )
        for m in matches
    ]


@router.delete("/users/{user_id}/memories")
async def erase_user_memories(user_id: str, container: Container):
    deleted = await container.memory.erase_user(user_id)
    return {"user_id": user_id, "deleted": deleted}
