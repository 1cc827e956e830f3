"""Prompts for the gate, retrieval and writer agents."""

from typing import TYPE_CHECKING

from ..memory.models import Exchange

if TYPE_CHECKING:
    from ..pipeline.rag import RagResult

GATE_SYSTEM_PROMPT = """You are a fast filter in front of a long-term memory system. Decide whether an exchange between a user and their assistant deserves to be processed by the memory pipeline.

Answer PROCESS when the exchange contains information worth remembering long term:
- People (names, roles, relationships)
- Decisions or validations ("we go with this approach", "she approved it")
- Personal facts (addresses, dates, preferences)
- Project progress, milestones, deadlines
- Changes of situation or plan
- Confirmations or denials, even a bare "yes" or "no" that answers a question or assumption the assistant made in a previous exchange

Answer SKIP when the exchange is purely:
- Technical debugging without a decision (stack traces, CSS fixes)
- Generic factual questions ("what time zone is Tokyo in?")
- Simple acknowledgements with no open question ("ok", "thanks" after a finished task)
- Small talk with no lasting content

When in doubt, answer PROCESS. Look at the PREVIOUS exchanges: if the assistant asked something there, a short reply here confirms it and must be PROCESS.

Answer with one word (PROCESS or SKIP) followed by a reason of at most 10 words."""

RAG_SYSTEM_PROMPT = """You are the retrieval agent of a personal memory system. Find EVERY memory entry relevant to one exchange, before the writer agent processes it. You only have read tools (search_memory, get_entry, list_category); you cannot modify anything.

## Step 1: extract entities
From the exchange and the recent exchanges of the same conversation, list people (resolve pronouns with the context), projects, topics, preferences, dates, and implicit entities (a project implies its client, a gift implies its recipient).

## Step 2: search in waves
- Wave 1: search_memory for each entity, with variants (full name, first name, acronym, synonyms).
- Wave 2: results include related entries (depth=1). When relations look relevant but incomplete, retry with depth=2 or 3, or use get_entry with depth=2.
- Wave 3: search every NEW entity discovered in previous waves.
Stop only when another search would not surface anything new.

## Step 3: decide the injection priority
Compare your findings with the current memory context the main assistant sees.
- normal: findings are already in the context, or are not relevant to this conversation.
- important: relevant information exists in memory but is ABSENT from the current context.
- critical: memory CONTRADICTS what the assistant seems to believe (outdated role, moved deadline), or the information is time-critical (imminent deadline, the user asks something memory already answers).

## Step 4: answer
Your LAST message must be ONLY a JSON block, no text before or after:

```json
{
  "priority": "normal",
  "reasoning": "Short justification of the priority",
  "relevant_entries": [
    {"key": "entry-key", "category": "people", "relevance": "Why it matters here"}
  ],
  "missing_from_context": ["keys found but absent from the current context"],
  "pre_context": "Full content and relations of the relevant entries"
}
```

If nothing relevant exists, answer priority "normal" with an empty relevant_entries list."""

RAG_REPAIR_PROMPT = """Your previous answer could not be parsed. Reply again with ONLY the JSON block described in your instructions (priority, reasoning, relevant_entries, pre_context). No other text."""

REFORMULATE_SYSTEM_PROMPT = """You receive a user message. Generate {count} different search queries to find relevant information in a personal memory database.

Rules:
- Each query targets a different angle (people, places, context, synonyms...)
- Use keywords, not full sentences
- One query per line, no numbering, no dashes
- Think of terms the database may contain even if the message does not use them"""

WRITER_SYSTEM_PROMPT = """You are the writer agent of a personal memory system. You maintain a structured memory database from the exchanges between the user and their assistants, across every channel and conversation.

## Exchanges
Each exchange is annotated with its channel, its conversation and its time:
<exchange channel="pwa" conversation="Project X" time="2026-02-17T10:30:00Z">
<user>...</user>
<assistant>...</assistant>
</exchange>
Conversations are INDEPENDENT. Never link two exchanges from different conversations implicitly: a pronoun refers to its own conversation. When two conversations explicitly name the same entity, you may combine them. A <rag_pre_context> block before an exchange lists entries the retrieval agent found relevant.

## Categories
| Category | Content | Examples |
|---|---|---|
| user | The user's identity and situation | "Lives in Paris", "Software developer" |
| preferences | Tastes, choices, habits | "Prefers TypeScript" |
| goals | Active short-term objectives | "Find a birthday gift for Marie" |
| facts | Objective useful information | "The car is a Tesla Model 3" |
| projects | Ongoing projects | "Kitchen renovation" |
| people | People around the user | "Marie, wife, works in marketing" |
| timeline | Dated events, recent or upcoming | "Dentist on Tuesday Feb 20" |

Do not mix categories. "Find a gift for Marie" is a GOAL (goals/cadeau-marie), not a fact about Marie. Create the goal, then add_relation(cadeau-marie, marie, involves).

## Content style
Each entry is a current-state snapshot, never a chronology. On update, rewrite the whole content so it reads without history. 2-5 sentences. Never lose important information: condense older details, keep recent ones precise.

## Statuses
goals: active, completed, paused, stale. projects: active, completed, paused. Other categories stay active.

## Relations
involves (goal -> person), part_of (sub-project -> project), related_to (two linked topics), depends_on (a needs b). Both entries must exist.

## Keys
Lowercase words joined by hyphens, descriptive and unique: "marie", "cadeau-marie", "kitchen-renovation".

Timestamps and mention counters are maintained automatically."""

AUDIT_PROMPT = """# Phase 1: audit (read-only)

For EVERY entity or concept in the exchanges below, search the memory. Then write an audit listing:
- entries to create (new information)
- entries to rewrite, with the new fact
- CONTRADICTIONS between the exchanges and stored entries, and every entry whose text still states an outdated value
- duplicates (same information under two keys) and miscategorized entries
- stale entries (goals or projects that are done or abandoned)
- entries that are merely referenced and should only be bumped
You cannot modify anything in this phase. End with the written audit.

{previous}

# Exchanges to process

{exchanges}"""

ACTIONS_PROMPT = """# Phase 2: actions (read/write)

Apply your audit now.
1. Resolve conflicts first: merge duplicates, fix miscategorized entries, mark stale entries.
2. Upsert new and changed entries. Rewrite content wholesale, never append.
3. MANDATORY: when you correct a fact, rewrite EVERY other entry whose text still states the old value. Updating relations is not enough. Use the related entries reported by upsert_entry.
4. Add or remove relations. delete_entry refuses entries with relations: handle them first.
When done, list what you changed."""

BUMPS_PROMPT = """# Phase 3: bumps

For every entry that was referenced in the exchanges but NOT modified in phase 2, call bump_mention. Do not bump entries you already upserted. When done, answer "done"."""

SUMMARY_PROMPT = """# Phase 4: summary

In 2-3 lines, summarize what changed in memory for this batch (created, rewritten, deleted, linked). If nothing changed, say so. Plain text only."""


def _recent_block(exchanges: list[Exchange], empty: str) -> str:
    if not exchanges:
        return empty
    return "\n".join(e.to_xml() for e in exchanges)


def build_gate_prompt(exchange: Exchange, recent: list[Exchange]) -> str:
    """User prompt for the gate: recent context, then the exchange to judge."""
    return (
        "Recent exchanges of this conversation:\n"
        f"{_recent_block(recent, 'No previous exchange.')}\n\n"
        "Latest exchange to evaluate:\n"
        f"{exchange.to_xml()}\n\n"
        "Does the LATEST exchange bring information worth remembering long term? "
        "PROCESS or SKIP?"
    )


def build_rag_prompt(exchange: Exchange, recent: list[Exchange], document: str | None) -> str:
    """User prompt for the retrieval agent."""
    memory_block = (
        f"<current_memory_context>\n{document}\n</current_memory_context>"
        if document
        else "<current_memory_context>Empty: no context is injected yet.</current_memory_context>"
    )
    return (
        f"Analyze this exchange:\n\n{exchange.to_xml()}\n\n"
        "Recent exchanges (conversation context):\n"
        f"<recent_exchanges>\n{_recent_block(recent, 'No recent exchange.')}\n</recent_exchanges>\n\n"
        f"Current memory context of the main assistant:\n{memory_block}"
    )


def build_reformulate_prompt(message: str) -> str:
    return f'User message: "{message}"'


def format_batch(results: list["RagResult"]) -> str:
    """Render a writer batch, each exchange preceded by its retrieval findings."""
    items = []
    for result in results:
        block = result.exchange.to_xml()
        if result.pre_context:
            block = (
                "<rag_pre_context>\nRelevant entries found for this exchange:\n"
                f"{result.pre_context}\n</rag_pre_context>\n{block}"
            )
        items.append(block)
    if len(items) == 1:
        return items[0]
    return "<exchanges>\n" + "\n\n".join(items) + "\n</exchanges>"


def format_previous(exchanges: list[Exchange]) -> str:
    """Earlier exchanges of the same conversations, with what they changed."""
    if not exchanges:
        return ""
    blocks = []
    for exchange in exchanges:
        block = exchange.to_xml()
        if exchange.memory_summary:
            block += f"\n<memory_changes>{exchange.memory_summary}</memory_changes>"
        blocks.append(block)
    return (
        "# Previous exchanges of these conversations (already processed)\n\n"
        + "\n".join(blocks)
    )


def build_audit_prompt(results: list["RagResult"], previous: list[Exchange]) -> str:
    return AUDIT_PROMPT.format(
        previous=format_previous(previous),
        exchanges=format_batch(results),
    )
