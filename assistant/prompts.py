from __future__ import annotations

from typing import Iterable, List, Optional

ENVELOPE_SCHEMA = """{
  "hasActions": boolean,
  "needsClarification": boolean,
  "clarificationNeeded": "question to ask the user, or null",
  "needsPermission": boolean,
  "permissionsNeeded": ["location|contacts|calendar|photos|microphone|camera|notifications"],
  "permissionReason": "string or null",
  "tasks": [{"title": "string", "description": "string", "priority": "low|medium|high", "dueDate": "ISO date or null"}],
  "assignments": [{"title": "string", "description": "string", "query": "string", "type": "research|comparison|recommendation|investigation|analysis", "priority": "low|medium|high"}],
  "reminders": [{"title": "string", "notes": "string", "reminderTime": "ISO date-time", "isUrgent": boolean}],
  "notes": [{"title": "string", "content": "string", "category": "personal|work|idea|urgent", "tags": ["string"]}],
  "calendarEvents": [{"title": "string", "description": "string", "startTime": "ISO date-time", "endTime": "ISO date-time", "location": "string", "attendees": ["email"]}],
  "emails": [{"to": ["email"], "cc": ["email"], "subject": "string", "body": "string"}],
  "meetings": [{"provider": "google-meet|zoom|teams", "title": "string", "startTime": "ISO date-time", "duration": 60, "description": "string", "attendees": ["email"]}],
  "search": {"query": "string", "type": "web|email|calendar|tasks"}
}"""

DETECTION_RULES = """ACTION RULES:
- TASKS: "add a task", "I need to", "don't forget to", "make sure I".
- ASSIGNMENTS: open-ended work the assistant does and reports back on later:
  "research", "find the best", "compare", "recommend", "look into", "analyse".
  Set "query" to the full question that should be researched.
- REMINDERS: "remind me to", "ping me about", "alert me when".
- NOTES: "make a note", "note down", "remember that", "I have an idea".
- CALENDAR EVENTS: "schedule", "book", "put on my calendar".
- EMAILS: "email", "draft an email", "write to".
- MEETINGS: "set up a Zoom", "create a Google Meet", "arrange a Teams call".
- SEARCH: "find", "search for", "look up", "show me" when nothing needs saving.

TIME RULES:
- Resolve times against the current local time above, in the user's timezone.
- Return date-times as local ISO values without a UTC offset (for example "2026-10-15T15:00:00");
  they are read in the user's timezone.
- "tomorrow at 3pm" is the next day at 15:00; "next Monday at 10am" is the next Monday at 10:00.
- A reminder, event or meeting without a clock time ("remind me tomorrow", "later", "next week")
  is ambiguous: set "needsClarification" to true, ask for the time in "clarificationNeeded"
  and return no actions.

PRIORITY: "urgent", "asap", "critical", "important" are high; "whenever", "low priority" are low; otherwise medium.

PERMISSIONS: when a request needs a device permission (for example "remind me when I get home" needs
location), set "needsPermission" to true, list the permissions and explain why in "permissionReason".
Return no actions in that case.

NO ACTIONS for greetings, thanks, small talk, questions about existing data
("what's on my schedule today?") or pure information questions that ask for nothing to be saved."""


def build_intent_prompt(utterance: str, now_iso: str, timezone_name: str = "UTC") -> str:
    return (
        "You are an intelligent personal assistant. Analyze this user request and determine whether it "
        "contains actionable items. Return ONLY valid JSON (no markdown, no code blocks).\n\n"
        f'User request: "{utterance}"\n'
        f"Current time: {now_iso} ({timezone_name})\n"
        f"User timezone: {timezone_name}\n\n"
        "Return this exact structure (omit empty lists if you like):\n"
        f"{ENVELOPE_SCHEMA}\n\n"
        f"{DETECTION_RULES}\n\n"
        "Now analyze the user's request and return the JSON."
    )


RESEARCH_PROMPTS = {
    "research": (
        "You are a research assistant. The user asked: \"{query}\"\n\n"
        "Perform comprehensive research and provide:\n"
        "1. A clear, concise summary (2-3 sentences)\n"
        "2. Key findings (3-5 bullet points with specific details)\n"
        "3. Relevant data, prices, or recommendations\n"
        "4. Sources or references if applicable\n\n"
        "Be specific and actionable. Include numbers, prices, names, and details."
    ),
    "comparison": (
        "You are a comparison assistant. The user asked: \"{query}\"\n\n"
        "Provide a detailed comparison including:\n"
        "1. Brief overview of what is being compared\n"
        "2. Key differences (3-5 main points)\n"
        "3. Pros and cons for each option\n"
        "4. Clear recommendation based on the comparison\n\n"
        "Be specific with prices, features, and details."
    ),
    "recommendation": (
        "You are a recommendation assistant. The user asked: \"{query}\"\n\n"
        "Provide:\n"
        "1. Top recommendations with reasoning\n"
        "2. Key criteria used for the recommendations\n"
        "3. Pros and cons for each option\n"
        "4. Clear final recommendation\n\n"
        "Be specific with details, prices, and features."
    ),
    "analysis": (
        "You are an analysis assistant. The user asked: \"{query}\"\n\n"
        "Provide:\n"
        "1. Thorough investigation of the topic\n"
        "2. Key findings and insights\n"
        "3. Supporting data and evidence\n"
        "4. Clear conclusions and recommendations\n\n"
        "Be specific and comprehensive."
    ),
}
RESEARCH_PROMPTS["investigation"] = RESEARCH_PROMPTS["analysis"]


def build_research_prompt(assignment_type: str, query: str) -> str:
    template = RESEARCH_PROMPTS.get(assignment_type, RESEARCH_PROMPTS["research"])
    return template.format(query=query)


TEXT_MODE_INSTRUCTIONS = """RESPONSE STYLE:
- Friendly and conversational
- Concise but informative; use short lists or formatting when it helps
- Proactive in offering help
- Reference specific data when relevant (e.g. "You have 5 tasks due today")"""

VOICE_MODE_INSTRUCTIONS = """RESPONSE STYLE (spoken aloud):
- One to three short sentences
- Plain conversational speech only: no markdown, lists, headings, links or emoji
- Say numbers and times the way a person would say them"""


def build_system_prompt(assistant_name: str, context_summary: str, mode: str) -> str:
    style = VOICE_MODE_INSTRUCTIONS if mode == "voice" else TEXT_MODE_INSTRUCTIONS
    return (
        f"You are {assistant_name}, an intelligent personal assistant with access to the user's data. "
        "Here is the current context:\n\n"
        f"{context_summary}\n\n"
        "CAPABILITIES:\n"
        "1. CREATE: tasks, reminders, notes, calendar events, email drafts, meetings and research assignments\n"
        "2. QUERY: answer questions about the user's data, integrations and schedule\n"
        "3. MANAGE: guide the user through connecting integrations\n\n"
        f"{style}\n\n"
        "Always maintain context from previous messages in the conversation."
    )


def build_turn_outcome_prompt(
    created: Iterable[str],
    refused: Iterable[str],
    clarification: Optional[str],
    permissions: List[str],
    permission_reason: Optional[str],
) -> Optional[str]:
    """Instruction describing what this turn did, appended after the history."""
    lines: List[str] = []
    created = list(created)
    refused = list(refused)
    if created:
        lines.append(
            "You just successfully executed these actions: "
            + ", ".join(created)
            + ". Confirm this to the user in a friendly way."
        )
    if refused:
        lines.append(
            "These requested actions were NOT carried out: "
            + "; ".join(refused)
            + ". Explain this briefly and pass on the suggestion. Do not claim they were done."
        )
    if clarification:
        lines.append(f"Nothing was created yet. Ask the user this clarifying question: {clarification}")
    if permissions:
        reason = f" Reason: {permission_reason}" if permission_reason else ""
        lines.append(
            "Nothing was created yet. Ask the user to grant these device permissions: "
            + ", ".join(permissions)
            + "."
            + reason
        )
    return "\n".join(lines) if lines else None
