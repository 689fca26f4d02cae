"""Fixed prompt templates, sentinel strings and regex patterns."""

from __future__ import annotations

import re

DATA_VERSION = 4

# Injection sentinels
INJECTION_HEADER = "[Scenario Summary]\n"
PREVIOUS_STORY_MARKER = "--- PREVIOUS STORY ---"
CURRENT_STORY_MARKER = "--- CURRENT STORY ---"

# Parse badges
PARSE_FAILED_BADGE = "❌ 파싱 실패"
INCOMPLETE_BADGE = "⚠️ 불완전"

# Group-included sentinel: "[→ #A-B group-summary-inclusion]"
GROUP_SENTINEL_TEMPLATE = "[→ #{start}-{end} group-summary-inclusion]"
GROUP_SENTINEL_RE = re.compile(
    r"^\s*\[→\s*#(\d+)\s*-\s*(\d+)\s+"
    r"(?:group-summary-inclusion|그룹 요약에 포함)\s*\]\s*$"
)

# Header line of a stored entry: "#N" or "#A-B"
ENTRY_HEADER_RE = re.compile(r"^#(\d+)(?:-(\d+))?[ \t]*$")

# Section headers inside LLM output: #3, #3-7, #3~7, [#3-7], **#3**, ## #3, 【#3】
SECTION_HEADER_RE = re.compile(
    r"^[ \t]*(?:\*\*)?(?:#{1,3}[ \t]*)?[\[【]?#(\d+)"
    r"(?:[ \t]*[-~][ \t]*(\d+))?[\]】]?(?:\*\*)?[ \t]*:?[ \t]*$",
    re.MULTILINE,
)

CATALOG_LABELS = ("CHARACTERS", "EVENTS", "ITEMS")

# ```CHARACTERS_JSON ...``` with optional language tag on either side of the label
_FENCE_OPEN = r"`{3,}[^\S\n]*(?:[A-Za-z]+[^\S\n]+)?"
FENCED_BLOCK_RE = re.compile(
    _FENCE_OPEN + r"(CHARACTERS|EVENTS|ITEMS)_JSON\b[^\n]*\n?"
    r"(.*?)(?:(?=" + _FENCE_OPEN + r"(?:CHARACTERS|EVENTS|ITEMS)_JSON)|`{3,}|\Z)",
    re.DOTALL | re.IGNORECASE,
)

# CHARACTERS_JSON:\n```json\n[...]\n```
LABELED_FENCE_RE = re.compile(
    r"(?:^|\n)[^\S\n]*(?:\*\*)?(CHARACTERS|EVENTS|ITEMS)_JSON(?:\*\*)?[^\S\n]*:?[^\S\n]*\n"
    r"[^\S\n]*`{3,}[^\S\n]*(?:json)?[^\S\n]*\n(.*?)(?:`{3,}|\Z)",
    re.DOTALL | re.IGNORECASE,
)

# [CHARACTERS] ... [/CHARACTERS], with or without the _JSON suffix
MARKER_BLOCK_RE = re.compile(
    r"\[(CHARACTERS|EVENTS|ITEMS)(?:_JSON)?\](.*?)(?:\[/.{0,5}?\1(?:_JSON)?\]|\Z)",
    re.DOTALL | re.IGNORECASE,
)

KOREAN_CHAR_RE = re.compile(r"[\u3131-\uD79D]")

DEFAULT_CATEGORY_ORDER = [
    "scenario",
    "emotion",
    "innerThoughts",
    "atmosphere",
    "location",
    "date",
    "time",
    "relationship",
]

DEFAULT_CATEGORIES: dict[str, dict] = {
    "scenario": {
        "enabled": True,
        "label": "Scenario",
        "icon": "📖",
        "prompt": (
            "Summarize the cause-and-effect flow of events narratively. Focus on "
            "who did what and why rather than simple enumeration. Quote important "
            "dialogue verbatim in double quotes to keep each character's voice."
        ),
    },
    "emotion": {
        "enabled": False,
        "label": "Emotion",
        "icon": "😊",
        "prompt": (
            "Write each line as '- CharacterName: Emotion (cause)', one character "
            "per line."
        ),
    },
    "innerThoughts": {
        "enabled": False,
        "label": "Inner Thoughts",
        "icon": "💭",
        "prompt": (
            "Record only inner monologue explicitly shown in the message as "
            "'- CharacterName: \"thought\"'. Write 'N/A' if there is none."
        ),
    },
    "atmosphere": {
        "enabled": False,
        "label": "Atmosphere",
        "icon": "🌙",
        "prompt": "Briefly describe the scene's tension, tone and mood with adjectives.",
    },
    "location": {
        "enabled": True,
        "label": "Location",
        "icon": "📍",
        "prompt": (
            "Name the physical location of the characters. Use an arrow (→) for "
            "movement; repeat the previous value if nothing changed."
        ),
    },
    "date": {
        "enabled": False,
        "label": "Date",
        "icon": "📅",
        "prompt": (
            "Infer the date from context as 'YY/M/D(Day)'. Keep the previous value "
            "unless the date changed, and mark a change with an arrow (→)."
        ),
    },
    "time": {
        "enabled": True,
        "label": "Time",
        "icon": "⏰",
        "prompt": (
            "State the time of day (dawn, night, ...). Repeat the previous value "
            "if nothing changed."
        ),
    },
    "relationship": {
        "enabled": True,
        "label": "Relationship",
        "icon": "💕",
        "prompt": (
            "Name the current relationship between the two characters with a "
            "single noun (neighbors, lovers, ...). Keep the previous value unless "
            "it clearly changed."
        ),
    },
}

DEFAULT_CATEGORY_LINE = "* Scenario: (Integrate key events and dialogue narratively)"

LANG_INSTRUCTIONS = {
    "ko": (
        "###### LANGUAGE REQUIREMENT ######\n"
        "**[필수] 모든 출력은 반드시 한국어로 작성하세요.**\n"
        "- 요약 본문, 대사 인용, 카테고리 라벨 모두 한국어"
    ),
    "en": (
        "###### LANGUAGE REQUIREMENT ######\n"
        "**[MANDATORY] Write EVERYTHING in English.**\n"
        "- Translate all dialogue and category labels to English."
    ),
    "ja": (
        "###### 言語要件 ######\n"
        "**【必須】すべての出力は日本語で作成してください。**\n"
        "- 要約本文、台詞引用、カテゴリラベルはすべて日本語"
    ),
    "zh": (
        "###### 语言要求 ######\n"
        "**【必须】所有输出必须用中文写。**\n"
        "- 摘要正文、对话引用、分类标签均使用中文"
    ),
    "hybrid": (
        "###### LANGUAGE REQUIREMENT - HYBRID MODE ######\n"
        "- Narrative text and category labels: ENGLISH\n"
        "- Dialogue in quotes: keep the ORIGINAL LANGUAGE, do not translate"
    ),
}

LANG_REMINDERS = {
    "ko": "[최종 리마인더] 아래 출력을 반드시 한국어로 작성하세요!",
    "en": "[FINAL REMINDER] Write ALL output below in ENGLISH!",
    "ja": "【最終リマインダー】以下の出力はすべて日本語で！",
    "zh": "【最终提醒】以下所有输出必须用中文！",
    "hybrid": "[FINAL REMINDER] Narrative in ENGLISH, quoted dialogue in the ORIGINAL LANGUAGE.",
}

PROFILE_SYSTEM_PROMPT = (
    "You are a helpful assistant that summarizes roleplay scenarios. "
    "Respond in the requested format only."
)

_WRITING_PRINCIPLES = """## Writing Principles
1. **Objectivity:** Write from facts present in the text, not interpretation.
2. **Contextual connection:** Connect events narratively to show cause and effect.
3. **Priority:** Omit trivial chatter; keep actions, events and dialogue that move the story.
4. **Continuity:** If time, location or relationship did not change, repeat the previous value exactly."""

DEFAULT_INDIVIDUAL_TEMPLATE = """{{ language }}

You are a skilled writer and editor who weaves long roleplay logs between {{ user }} and {{ char }} into a cohesive narrative.

## Mission
Summarize each provided message on its own according to the categories below.

""" + _WRITING_PRINCIPLES + """
{% if previousSummaries %}

## Previous Summary State
{{ previousSummaries }}
{% endif %}
{% if existingCharacters %}

## Existing Characters
{{ existingCharacters }}
{% endif %}

## Messages to Summarize
{{ messages }}

## Output Format
Start EACH message with a "#MessageNumber" header on its own line, then one "* Label: content" line per category. Separate messages with a blank line. Never skip the header.

#MessageNumber
{{ categories }}"""

DEFAULT_BATCH_TEMPLATE = """{{ language }}

You are a skilled writer and editor who weaves long roleplay logs between {{ user }} and {{ char }} into a cohesive narrative.

## Mission
Integrate the messages of each group into a single, naturally flowing summary.

""" + _WRITING_PRINCIPLES + """
{% if previousSummaries %}

## Previous Summary State
{{ previousSummaries }}
{% endif %}
{% if existingCharacters %}

## Existing Characters
{{ existingCharacters }}
{% endif %}

## Messages to Summarize
{{ messages }}

## Output Format
Start EACH group with a "#Start-End" header on its own line, then one "* Label: content" line per category. Separate groups with a blank line. Never skip the header.

#Start-End
{{ categories }}"""

DEFAULT_CHARACTER_EXTRACT_TEMPLATE = """## Character Extraction
Extract profiles of key characters actively involved in these messages.
- Only confirmed information: appearance, personality, key actions, relationships.
- Skip generic one-off NPCs and skip {{ char }} and {{ user }} themselves.
- Characters already listed under "Existing Characters" only when something significant changed.
- Do not record temporary states such as current emotions.

Append a fenced block labeled CHARACTERS_JSON containing a JSON array:
```CHARACTERS_JSON
[{"name": "Alice", "role": "ally", "age": "24", "occupation": "mage", "description": "blonde, blue eyes", "traits": ["curious", "kind"], "relationshipWithUser": "childhood friend", "firstAppearance": 42}]
```
Output an empty array when nothing changed."""

DEFAULT_EVENT_EXTRACT_TEMPLATE = """## Key Event Extraction
Extract ONLY pivotal moments that change character states, relationships or the story's direction (confessions, revelations, breakups, vows, life-or-death crises). Never extract everyday conversation or minor arguments.

If there are events, append a fenced block labeled EVENTS_JSON containing a JSON array:
```EVENTS_JSON
[{"title": "First Confession", "description": "{{ user }} confessed to Alice", "participants": ["{{ user }}", "Alice"], "importance": "high", "messageIndex": 42}]
```"""

DEFAULT_ITEM_EXTRACT_TEMPLATE = """## Key Item Extraction
Extract ONLY items that play a crucial role in the story: gifts, symbols of a relationship, keys and tools the plot needs, a character's core belongings. Skip food, clothing and background objects.

If there are items, append a fenced block labeled ITEMS_JSON containing a JSON array (status is one of owned, used, lost, transferred, broken):
```ITEMS_JSON
[{"name": "Couple Ring", "description": "promise token with Alice", "owner": "{{ user }}", "status": "owned", "origin": "gift from Alice", "messageIndex": 58}]
```"""

DEFAULT_COMPRESS_TEMPLATE = """{{ language }}

You are an editor who condenses roleplay summaries for {{ user }} and {{ char }}.

## Compression Rules
- Rewrite each summary to about 60-80% of its length.
- Keep every proper noun, promise and commitment.
- Keep quoted dialogue verbatim.
- Keep each "#N" or "#A-B" header line and every "* Category:" label exactly as given.
- Do not add information that is not in the original.

## Summaries to Compress
{{ summaries }}

## Output Format
Return every summary in the same order, each starting with its original header line."""
