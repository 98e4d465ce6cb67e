"""Dental Concierge — a WhatsApp receptionist for a single dental clinic.

Architecture Overview
=====================

Inbound WhatsApp events flow through four layers:

1. **InboundRouter** (``inbound.py``) — decides who owns the conversation.
   Operator messages are relayed, media escalates to a human, and while a
   handoff is active client messages are only logged.

2. **MessageAggregator** (``services/aggregator.py``) — coalesces bursts of
   short messages into one logical turn (10 s debounce, immediate flush on
   terminal punctuation), serialized per conversation key.

3. **DialogueOrchestrator** (``agent.py``) — a LangGraph StateGraph:

     chatbot → (tool request?) → tools → chatbot (loop)
             → (final text?)   → END
             → (stuck / ceiling reached?) → escalate → END

   The transcript is persisted before and after every tool call so an
   interrupted turn can be repaired by the history compactor.

4. **Tools** (``tools/``) — a closed dispatch table over the Dentalink
   scheduling API and the handoff service.

Key Design Decisions
--------------------
- **LLM**: Claude via ``langchain-anthropic``; only the first tool call of a
  response is honoured so every request gets exactly one result.
- **Dates**: bookings are grounded in server-computed slot lists
  (``services/slot_matcher.py``); the model never does calendar arithmetic
  that reaches the backend unchecked.
- **State**: sessions expire after 30 minutes of inactivity; the patient
  profile (name, document) and the text log never expire.
- **Storage**: DynamoDB with optimistic locking in production, an in-memory
  store locally; a store outage degrades to memory for the process lifetime.

Package Structure
-----------------
- ``dental_concierge/agent.py`` — tool caller, LangGraph loop, orchestrator
- ``dental_concierge/inbound.py`` — inbound routing and handoff arbitration
- ``dental_concierge/history.py`` — transcript compaction and storage projection
- ``dental_concierge/models.py`` — pydantic records (Session, Handoff, ...)
- ``dental_concierge/dates.py`` — clinic-local dates and Spanish labels
- ``dental_concierge/prompts.py`` — system prompt
- ``dental_concierge/wiring.py`` — builds the object graph for server and CLI
- ``dental_concierge/server.py`` — FastAPI application
- ``dental_concierge/main.py`` — CLI chat interface
- ``dental_concierge/services/`` — stores, aggregator, external API clients
- ``dental_concierge/tools/`` — tool schemas and handlers
- ``dental_concierge/api/`` — FastAPI routes and Pydantic schemas
"""
