"""REST API for Colloquy.

Endpoints:
  POST   /chat                                  - Send a turn, SSE stream of turn events
  GET    /chats                                 - List own chats (recency order, ?q= search)
  POST   /chats                                 - Create an empty chat
  GET    /chats/{chat_id}                       - Chat with its messages
  PATCH  /chats/{chat_id}                       - Rename / switch agent
  DELETE /chats/{chat_id}                       - Soft-delete
  GET    /chats/{chat_id}/messages              - Ordered messages
  PATCH  /chats/{chat_id}/messages/{message_id} - Edit a user message (truncates after it)
  DELETE /chats/{chat_id}/messages/{message_id} - Delete a message and everything after it
  POST   /chats/{chat_id}/retry                 - Re-issue a turn, SSE stream
  POST   /chats/{chat_id}/approvals/{call_id}   - Approve or deny a pending tool call
  GET    /chats/{chat_id}/share                 - Share link settings
  PATCH  /chats/{chat_id}/share                 - Enable/disable, public/platform, regenerate link
  GET    /share/chat/{sharing_uuid}             - Read-only shared view (identity optional)
  POST   /chats/clone                           - Copy a shared chat into the caller's account
  GET    /agents                                - Agents visible to the caller
  GET    /admin/agents                          - All agents (admin)
  POST   /admin/agents                          - Create agent (admin)
  GET    /admin/agents/{agent_id}               - Agent detail (admin)
  PATCH  /admin/agents/{agent_id}               - Update agent (admin)
  GET    /admin/tools                           - Registered tools (admin)
  GET    /health                                - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from colloquy.agents.manager import AgentManager
from colloquy.agents.schemas import AgentInput, AgentSummary, AgentUpdate
from colloquy.api.auth import UserIdentity, header_identity
from colloquy.api.runner import TurnOrchestrator
from colloquy.api.streaming import TurnStream
from colloquy.api.tools import ToolRegistry
from colloquy.chats.schemas import ShareUpdate
from colloquy.chats.store import ConversationStore
from colloquy.config import Settings
from colloquy.errors import (
    ChatBusyError,
    ConfirmationRequiredError,
    NotFoundError,
    ValidationError,
)
from colloquy.storage.database import Database

logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _error_response(e: Exception) -> JSONResponse:
    """Map the error taxonomy onto HTTP statuses."""
    if isinstance(e, ConfirmationRequiredError):
        return JSONResponse(
            {"error": str(e), "requires_confirmation": True, "will_delete": e.will_delete},
            status_code=409,
        )
    if isinstance(e, ChatBusyError):
        return JSONResponse({"error": str(e)}, status_code=409)
    if isinstance(e, NotFoundError):
        return JSONResponse({"error": str(e)}, status_code=404)
    if isinstance(e, ValidationError):
        return JSONResponse({"error": str(e)}, status_code=400)
    if isinstance(e, PydanticValidationError):
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        return JSONResponse({"error": f"Invalid input: {problems}"}, status_code=400)
    logger.exception("Unhandled API error")
    return JSONResponse({"error": "Internal server error"}, status_code=500)


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() in ("1", "true", "yes")
    return bool(value)


def _int_param(request: Request, name: str, default: int) -> int:
    try:
        return int(request.query_params.get(name, default))
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def create_app(
    orchestrator: TurnOrchestrator,
    store: ConversationStore,
    agents: AgentManager,
    registry: ToolRegistry,
    database: Database,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    def identify(request: Request) -> UserIdentity | JSONResponse:
        identity = header_identity(request, settings)
        if identity is None:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        return identity

    def identify_admin(request: Request) -> UserIdentity | JSONResponse:
        identity = identify(request)
        if isinstance(identity, UserIdentity) and not identity.is_admin:
            return JSONResponse({"error": "Admin access required"}, status_code=403)
        return identity

    async def usable_agent(agent_id: str, identity: UserIdentity) -> None:
        """Non-admins may only pick public agents."""
        agent = await agents.get(agent_id)
        if agent is None or (agent.visibility != "public" and not identity.is_admin):
            raise NotFoundError(f"Agent {agent_id} not found")

    def stream_response(stream: TurnStream) -> StreamingResponse:
        return StreamingResponse(stream.sse(), media_type="text/event-stream", headers=_SSE_HEADERS)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def chat(request: Request) -> Response:
        """POST /chat - Run one turn and stream its events.

        Body: {"chat_id"?: str, "message"?: str, "agent_id"?: str}. Without a
        chat_id a new chat is created. Without a message the reply is
        generated for the chat's trailing user message (after an edit).
        """
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            body = await _json_body(request)
            chat_id = body.get("chat_id")
            message = body.get("message")
            if message is not None:
                if not isinstance(message, str):
                    raise ValidationError("message must be a string")
                if not message.strip():
                    raise ValidationError("message must not be empty")

            # Checked before a new chat is created so a rejected send leaves nothing behind
            if not chat_id:
                if message is None:
                    raise ValidationError("Missing required field: message")
                agent_id = body.get("agent_id")
                if agent_id:
                    await usable_agent(agent_id, identity)
                created = await store.create_chat(identity.user_id, agent_id)
                chat_id = created.id

            plan = await orchestrator.prepare_turn(chat_id, identity.user_id, message)
        except Exception as e:
            return _error_response(e)

        stream = TurnStream(orchestrator.run(plan), name=f"turn-{plan.turn_id}")
        return stream_response(stream)

    async def retry(request: Request) -> Response:
        """POST /chats/{chat_id}/retry - Regenerate from a message.

        Body: {"message_id": str, "confirm"?: bool}. The user message at or
        before message_id is deleted with everything after it and re-sent.
        """
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        try:
            body = await _json_body(request)
            message_id = body.get("message_id")
            if not message_id:
                raise ValidationError("Missing required field: message_id")
            plan = await orchestrator.prepare_retry(
                chat_id, identity.user_id, message_id, confirm=_flag(body.get("confirm", False))
            )
        except Exception as e:
            return _error_response(e)

        stream = TurnStream(orchestrator.run(plan), name=f"turn-{plan.turn_id}")
        return stream_response(stream)

    async def resolve_approval(request: Request) -> JSONResponse:
        """POST /chats/{chat_id}/approvals/{tool_call_id} - {"approved": bool}."""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        tool_call_id = request.path_params["tool_call_id"]
        try:
            body = await _json_body(request)
            if not isinstance(body.get("approved"), bool):
                raise ValidationError("Missing required boolean field: approved")
            if await store.get_chat(chat_id, identity.user_id) is None:
                raise NotFoundError(f"Chat {chat_id} not found")
            if not orchestrator.approvals.resolve(chat_id, tool_call_id, body["approved"]):
                raise NotFoundError(f"No pending approval for tool call {tool_call_id}")
            return JSONResponse({"tool_call_id": tool_call_id, "approved": body["approved"]})
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(request: Request) -> JSONResponse:
        """GET /chats/{chat_id}/messages"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        try:
            if await store.get_chat(chat_id, identity.user_id) is None:
                raise NotFoundError(f"Chat {chat_id} not found")
            messages = await store.list_ordered(chat_id)
            return JSONResponse({"messages": [m.to_dict() for m in messages]})
        except Exception as e:
            return _error_response(e)

    async def edit_message(request: Request) -> JSONResponse:
        """PATCH /chats/{chat_id}/messages/{message_id} - {"content": str, "confirm"?: bool}."""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        message_id = request.path_params["message_id"]
        try:
            body = await _json_body(request)
            content = body.get("content")
            if not isinstance(content, str) or not content.strip():
                raise ValidationError("Missing required field: content")
            result = await orchestrator.edit_message(
                chat_id, identity.user_id, message_id, content, confirm=_flag(body.get("confirm", False))
            )
            return JSONResponse({"deleted_count": result.deleted_count, "message": result.message.to_dict()})
        except Exception as e:
            return _error_response(e)

    async def delete_message(request: Request) -> JSONResponse:
        """DELETE /chats/{chat_id}/messages/{message_id}?confirm=true"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        message_id = request.path_params["message_id"]
        try:
            deleted = await orchestrator.delete_from(
                chat_id, identity.user_id, message_id, confirm=_flag(request.query_params.get("confirm", ""))
            )
            return JSONResponse({"success": True, "deleted_count": deleted})
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    async def list_chats(request: Request) -> JSONResponse:
        """GET /chats?limit=&offset=&q="""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            page = await store.list_chats(
                identity.user_id,
                limit=_int_param(request, "limit", 50),
                offset=_int_param(request, "offset", 0),
                search=request.query_params.get("q"),
            )
            return JSONResponse(page.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def create_chat(request: Request) -> JSONResponse:
        """POST /chats - {"agent_id"?: str}"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            body = await _json_body(request) if await request.body() else {}
            agent_id = body.get("agent_id")
            if agent_id:
                await usable_agent(agent_id, identity)
            created = await store.create_chat(identity.user_id, agent_id)
            return JSONResponse(created.model_dump(mode="json"), status_code=201)
        except Exception as e:
            return _error_response(e)

    async def get_chat(request: Request) -> JSONResponse:
        """GET /chats/{chat_id}"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        try:
            found = await store.get_chat(chat_id, identity.user_id)
            if found is None:
                raise NotFoundError(f"Chat {chat_id} not found")
            messages = await store.list_ordered(chat_id)
            return JSONResponse(
                {
                    **found.model_dump(mode="json"),
                    "messages": [m.to_dict() for m in messages],
                    "busy": orchestrator.leases.is_held(chat_id),
                    "pending_approvals": orchestrator.approvals.pending(chat_id),
                }
            )
        except Exception as e:
            return _error_response(e)

    async def update_chat(request: Request) -> JSONResponse:
        """PATCH /chats/{chat_id} - {"title"?: str, "agent_id"?: str}"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        try:
            body = await _json_body(request)
            agent_id = body.get("agent_id")
            if agent_id:
                await usable_agent(agent_id, identity)
            updated = await store.update_chat(chat_id, identity.user_id, title=body.get("title"), agent_id=agent_id)
            return JSONResponse(updated.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def delete_chat(request: Request) -> JSONResponse:
        """DELETE /chats/{chat_id}"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        chat_id = request.path_params["chat_id"]
        try:
            if orchestrator.leases.is_held(chat_id):
                raise ChatBusyError(chat_id)
            await store.soft_delete_chat(chat_id, identity.user_id)
            return JSONResponse({"success": True})
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Sharing
    # ------------------------------------------------------------------

    async def get_share(request: Request) -> JSONResponse:
        """GET /chats/{chat_id}/share"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            share = await store.get_sharing(request.path_params["chat_id"], identity.user_id)
            return JSONResponse(share.model_dump(mode="json"))
        except Exception as e:
            return _error_response(e)

    async def update_share(request: Request) -> JSONResponse:
        """PATCH /chats/{chat_id}/share - {"enabled"?: bool, "type"?: "public"|"platform", "regenerate"?: bool}"""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            change = ShareUpdate.model_validate(await _json_body(request))
            updated = await store.set_sharing(request.path_params["chat_id"], change, user_id=identity.user_id)
            return JSONResponse({"success": True, **updated.model_dump(mode="json")})
        except Exception as e:
            return _error_response(e)

    async def shared_chat(request: Request) -> JSONResponse:
        """GET /share/chat/{sharing_uuid} - Read-only view through a share link.

        Public links need no identity; platform links need a signed-in viewer.
        """
        viewer = header_identity(request, settings)
        try:
            shared = await store.get_shared(request.path_params["sharing_uuid"])
            if shared is None:
                raise NotFoundError("Chat not found")
            if shared.sharing_type == "platform" and viewer is None:
                return JSONResponse({"error": "Authentication required", "requires_auth": True}, status_code=401)

            is_owner = viewer is not None and viewer.user_id == shared.owner_id
            agent = shared.agent
            return JSONResponse(
                {
                    "chat": {
                        "id": shared.id,
                        "title": shared.title,
                        "created_at": shared.created_at.isoformat(),
                        "sharing_type": shared.sharing_type,
                        "agent": agent.model_dump(mode="json", exclude={"visibility"}) if agent else None,
                    },
                    "messages": [m.to_dict() for m in shared.messages],
                    "viewer": {
                        "is_authenticated": viewer is not None,
                        "is_owner": is_owner,
                        "can_clone": viewer is not None,
                        "agent_available": bool(
                            is_owner
                            or (agent is not None and agent.visibility == "public")
                            or (viewer is not None and viewer.is_admin)
                        ),
                    },
                }
            )
        except Exception as e:
            return _error_response(e)

    async def clone_chat(request: Request) -> JSONResponse:
        """POST /chats/clone - {"sharing_uuid": str}. Copies a shared chat into the caller's account."""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            body = await _json_body(request)
            sharing_uuid = body.get("sharing_uuid")
            if not isinstance(sharing_uuid, str) or not sharing_uuid:
                raise ValidationError("Missing required field: sharing_uuid")
            result = await store.clone_chat(sharing_uuid, identity.user_id)
            return JSONResponse(
                {
                    "success": True,
                    "chat_id": result.chat.id,
                    "agent_changed": result.agent_changed,
                    "chat": result.chat.model_dump(mode="json"),
                },
                status_code=201,
            )
        except Exception as e:
            return _error_response(e)

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    async def list_agents(request: Request) -> JSONResponse:
        """GET /agents - public agents; admins also see admin_only ones."""
        identity = identify(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            found = await agents.list_agents(include_admin_only=identity.is_admin)
            summaries = [AgentSummary.model_validate(a.model_dump()) for a in found]
            return JSONResponse({"agents": [s.model_dump(mode="json") for s in summaries]})
        except Exception as e:
            return _error_response(e)

    async def admin_list_agents(request: Request) -> JSONResponse:
        """GET /admin/agents"""
        identity = identify_admin(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            found = await agents.list_agents(include_admin_only=True)
            return JSONResponse({"agents": [a.model_dump(mode="json") for a in found]})
        except Exception as e:
            return _error_response(e)

    async def admin_create_agent(request: Request) -> JSONResponse:
        """POST /admin/agents"""
        identity = identify_admin(request)
        if isinstance(identity, JSONResponse):
            return identity
        try:
            body = await _json_body(request)
            created = await agents.create(AgentInput.model_validate(body))
            return JSONResponse({"success": True, "agent": created.model_dump(mode="json")}, status_code=201)
        except Exception as e:
            return _error_response(e)

    async def admin_get_agent(request: Request) -> JSONResponse:
        """GET /admin/agents/{agent_id}"""
        identity = identify_admin(request)
        if isinstance(identity, JSONResponse):
            return identity
        agent_id = request.path_params["agent_id"]
        try:
            found = await agents.get(agent_id)
            if found is None:
                raise NotFoundError(f"Agent {agent_id} not found")
            return JSONResponse({"agent": found.model_dump(mode="json")})
        except Exception as e:
            return _error_response(e)

    async def admin_update_agent(request: Request) -> JSONResponse:
        """PATCH /admin/agents/{agent_id}"""
        identity = identify_admin(request)
        if isinstance(identity, JSONResponse):
            return identity
        agent_id = request.path_params["agent_id"]
        try:
            body = await _json_body(request)
            updated = await agents.update(agent_id, AgentUpdate.model_validate(body))
            return JSONResponse({"success": True, "agent": updated.model_dump(mode="json")})
        except Exception as e:
            return _error_response(e)

    async def admin_list_tools(request: Request) -> JSONResponse:
        """GET /admin/tools"""
        identity = identify_admin(request)
        if isinstance(identity, JSONResponse):
            return identity
        return JSONResponse({"tools": registry.available()})

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chats", list_chats, methods=["GET"]),
        Route("/chats", create_chat, methods=["POST"]),
        Route("/chats/clone", clone_chat, methods=["POST"]),
        Route("/chats/{chat_id}", get_chat, methods=["GET"]),
        Route("/chats/{chat_id}", update_chat, methods=["PATCH"]),
        Route("/chats/{chat_id}", delete_chat, methods=["DELETE"]),
        Route("/chats/{chat_id}/messages", list_messages, methods=["GET"]),
        Route("/chats/{chat_id}/messages/{message_id}", edit_message, methods=["PATCH"]),
        Route("/chats/{chat_id}/messages/{message_id}", delete_message, methods=["DELETE"]),
        Route("/chats/{chat_id}/retry", retry, methods=["POST"]),
        Route("/chats/{chat_id}/approvals/{tool_call_id}", resolve_approval, methods=["POST"]),
        Route("/chats/{chat_id}/share", get_share, methods=["GET"]),
        Route("/chats/{chat_id}/share", update_share, methods=["PATCH"]),
        Route("/share/chat/{sharing_uuid}", shared_chat, methods=["GET"]),
        Route("/agents", list_agents),
        Route("/admin/agents", admin_list_agents, methods=["GET"]),
        Route("/admin/agents", admin_create_agent, methods=["POST"]),
        Route("/admin/agents/{agent_id}", admin_get_agent, methods=["GET"]),
        Route("/admin/agents/{agent_id}", admin_update_agent, methods=["PATCH"]),
        Route("/admin/tools", admin_list_tools),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
