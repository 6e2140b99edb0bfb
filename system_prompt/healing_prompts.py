import json
from typing import Any, Dict, List, Optional

FILE_SAMPLE_CHARS = 800

METHOD_DESCRIPTIONS = """**HEALING METHODS:**
- `unescape`: Fix over-escaped characters (\\\\n -> \\n, \\\\t -> \\t, \\\\" -> ", etc.)
- `llm_correction`: Reformat the parameters so they match the file content
- `newstring_adjustment`: Adjust spacing, whitespace, or string boundaries of the replacement
- `manual_intervention`: Problem too complex for automated healing"""

_FAILURE_MODES = """FAILURE MODES TO DETECT:
- Over-escaping: \\\\n, \\\\t, \\\\", \\\\\\\\
- Under-escaping: missing escapes where needed
- Whitespace issues: extra spaces, wrong indentation, mixed tabs/spaces
- Line ending problems: \\r\\n vs \\n inconsistencies
- JSON escaping: incorrect \\" handling
- Unicode/encoding issues: character representation problems
- Context misunderstanding: wrong text selection from the file"""

_OUTPUT_REQUIREMENTS = """OUTPUT REQUIREMENTS:
- Always respond with a single valid JSON object and nothing else
- Provide specific, testable corrections
- Explain reasoning clearly but concisely
- Assess confidence honestly (0.0 to 1.0)
- Choose the most appropriate healing method"""


def string_healing_system_prompt() -> str:
    """System prompt for correcting the parameters of a text replacement."""
    return f"""You are an advanced metacognitive system specialized in analyzing and correcting tool parameter failures from Large Language Models.

CORE EXPERTISE:
- LLM parameter generation patterns and common failure modes
- Model-specific bugs (Gemini over-escaping, Claude whitespace, DeepSeek JSON issues, GPT formatting)
- String matching and text processing precision requirements
- Automated healing strategies and their effectiveness

ANALYSIS PRINCIPLES:
1. **Precision First**: corrected parameters must match file content exactly
2. **Pattern Recognition**: identify model-specific error patterns quickly
3. **Conservative Approach**: when uncertain, recommend manual intervention
4. **Context Awareness**: consider file type, content structure, and error context
5. **Efficiency**: prefer simpler solutions (unescape > pattern > LLM correction)

{_OUTPUT_REQUIREMENTS}

{_FAILURE_MODES}

Be systematic, precise, and helpful. Your corrections directly impact tool execution success."""


def patch_healing_system_prompt() -> str:
    """System prompt for repairing a unified diff that failed to apply."""
    return f"""You repair unified diff patches that failed to apply to a file.

CORE EXPERTISE:
- Unified diff syntax: `--- a/path`, `+++ b/path`, `@@ -start,count +start,count @@` hunk headers
- Context lines (prefixed by a space), deletions (`-`) and additions (`+`)
- Matching context and deleted lines against the real file content character for character

ANALYSIS PRINCIPLES:
1. Keep the intent of every change; never invent new edits
2. Rewrite context and deletion lines so they equal the file content exactly
3. Fix hunk headers so the line numbers and counts are consistent
4. Include at least three lines of context around each change where the file allows it

{_OUTPUT_REQUIREMENTS}

{_FAILURE_MODES}

Respond with JSON of the form:
{{"success": true, "correctedPatch": "<full corrected unified diff>", "reasoning": "...", "confidence": 0.8, "suggestedMethod": "llm_correction"}}
If the patch cannot be repaired, respond with success=false and suggestedMethod "manual_intervention"."""


def _format_attempts(attempts: List[Dict[str, Any]]) -> str:
    if not attempts:
        return "**PREVIOUS HEALING ATTEMPTS:** None"
    lines = ["**PREVIOUS HEALING ATTEMPTS:**"]
    for index, attempt in enumerate(attempts, start=1):
        result = "SUCCESS" if attempt.get("success") else "FAILED"
        if attempt.get("error"):
            result += f": {attempt['error']}"
        lines.append(
            f"{index}. Method: {attempt.get('method')}\n"
            f"   Result: {result}\n"
            f"   Parameters used: {json.dumps(attempt.get('parameters', {}), indent=2)}"
        )
    return "\n\n".join(lines)


def old_string_correction_prompt(
    source_model: str,
    error_message: str,
    failed_parameters: Dict[str, Any],
    file_context: str,
    attempts: Optional[List[Dict[str, Any]]] = None,
    file_path: Optional[str] = None,
) -> str:
    """Ask for an old text that occurs exactly once in ``file_context``."""
    return f"""**TOOL PARAMETER HEALING ANALYSIS REQUEST**

A text replacement failed because `old_string` was not found in the file. Identify the segment of the file that `old_string` was most likely intended to match and return it exactly as it appears in the file.

**CONTEXT:**
- Source Model: {source_model}
- Error Message: "{error_message}"
- File Path: {file_path or 'unknown'}

**FAILED PARAMETERS:**
```json
{json.dumps(failed_parameters, indent=2)}
```

**FILE CONTENT (region around the most likely match):**
```
{file_context}
```

{_format_attempts(attempts or [])}

{METHOD_DESCRIPTIONS}

**RESPONSE FORMAT:**
Respond with a JSON object only:
{{"success": true, "correctedParameters": {{"old_string": "text copied exactly from the file"}}, "reasoning": "...", "confidence": 0.85, "suggestedMethod": "llm_correction"}}

**IMPORTANT REQUIREMENTS:**
- `old_string` MUST occur exactly once in the file content shown above
- Copy it character for character, including indentation and line breaks
- If unsure, answer with success=false and suggestedMethod "manual_intervention"
"""


def new_string_correction_prompt(
    source_model: str,
    original_old: str,
    corrected_old: str,
    original_new: str,
    file_sample: str = "",
) -> str:
    """Ask for a replacement text consistent with a corrected old text."""
    sample = file_sample[:FILE_SAMPLE_CHARS]
    if len(file_sample) > FILE_SAMPLE_CHARS:
        sample += "\n... [truncated]"
    return f"""**REPLACEMENT TEXT ADJUSTMENT REQUEST**

The `old_string` of a text replacement was corrected so it matches the file. The `new_string` was written with the same formatting problems and must be adjusted the same way, keeping the intended change.

- Source Model: {source_model}

**ORIGINAL old_string:**
```
{original_old}
```

**CORRECTED old_string:**
```
{corrected_old}
```

**ORIGINAL new_string (potentially with escaping issues):**
```
{original_new}
```

**FILE CONTENT SAMPLE (first {FILE_SAMPLE_CHARS} chars):**
```
{sample}
```

Respond with a JSON object only:
{{"success": true, "correctedParameters": {{"new_string": "adjusted replacement text"}}, "reasoning": "...", "confidence": 0.8, "suggestedMethod": "newstring_adjustment"}}"""


def patch_correction_prompt(patch: str, explanation: str) -> str:
    """Ask for a corrected version of ``patch``; ``explanation`` carries file context."""
    return f"""**PATCH REPAIR REQUEST**

The following unified diff failed to apply.

**FAILED PATCH:**
```diff
{patch}
```

**CONTEXT:**
{explanation}

Return the full corrected patch in the `correctedPatch` field of the JSON response."""


def connection_test_prompt() -> str:
    return 'Test connection. Respond with: "OK"'
