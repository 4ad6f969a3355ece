"""Prompt registry for versioned stage prompts.

Templates use ``{field}`` placeholders filled from the stage input's wire
names. Prompts can be swapped by name without code changes.
"""

from __future__ import annotations

import string
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

JSON_ONLY_INSTRUCTION = (
    "CRITICAL: Your response must be a single, valid JSON value and nothing else. "
    "Do not include any explanatory text or markdown fences before or after the JSON."
)


class PromptVersion(BaseModel):
    """A versioned prompt with metadata."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Unique prompt identifier")
    version: str = Field(..., description="Semantic version string")
    description: str = Field(..., description="What this prompt is for")
    template: str = Field(..., description="The prompt template text")

    @property
    def placeholders(self) -> frozenset[str]:
        names = (field for _, field, _, _ in string.Formatter().parse(self.template))
        return frozenset(name for name in names if name)

    def render(self, values: Mapping[str, Any]) -> str:
        missing = self.placeholders - set(values)
        if missing:
            raise KeyError(f"Prompt '{self.name}' missing values: {sorted(missing)}")
        rendered = self.template.format_map(
            {name: values[name] for name in self.placeholders}
        )
        if JSON_ONLY_INSTRUCTION not in rendered:
            rendered = f"{rendered.rstrip()}\n\n{JSON_ONLY_INSTRUCTION}\n"
        return rendered


_PROMPT_REGISTRY: dict[str, PromptVersion] = {}


def register_prompt(prompt: PromptVersion) -> None:
    """Register a prompt version."""
    _PROMPT_REGISTRY[prompt.name] = prompt


def get_prompt(name: str) -> PromptVersion:
    """Get a registered prompt by name."""
    if name not in _PROMPT_REGISTRY:
        available = list(_PROMPT_REGISTRY.keys())
        raise KeyError(f"Prompt '{name}' not registered. Available: {available}")
    return _PROMPT_REGISTRY[name]


def list_prompts() -> list[str]:
    """List all registered prompt names."""
    return list(_PROMPT_REGISTRY.keys())


# --- Register Default Prompts ---

register_prompt(
    PromptVersion(
        name="analyzer_v1",
        version="1.0.0",
        description="Trend, pattern and sentiment analysis of csv or text input",
        template="""\
You are a data analysis expert. Analyze the following {inputType} data and generate \
insights, identifying trends, patterns, and sentiment.

Return a JSON object of the form:
{{"analysis": {{"summary": "...", "trends": "...", "patterns": "...", "sentiment": "..."}}}}

Data: {inputData}
""",
    )
)

register_prompt(
    PromptVersion(
        name="composer_v1",
        version="1.0.0",
        description="Translate a data analysis into key, tempo, instrumentation and notes",
        template="""\
You are an expert music composer translating data analysis into music theory.

You will make a series of AUTONOMOUS DECISIONS to translate the analysis into music \
theory. You will decide the key (e.g., C minor for negative sentiment), tempo, \
instrumentation (e.g., strings for smooth trends, percussive hits for outliers), and \
the precise mapping of data values to musical notes (pitch, duration, velocity).

Here is the data analysis:
{analysis}

Output the final audioMapping JSON object, which serves as the "sheet music":
{{"audioMapping": {{"key": "C minor", "tempo": 90, "instrumentation": ["strings"], \
"dataMapping": [{{"time": 0.0, "note": "C4", "duration": 0.5, "velocity": 0.8}}]}}}}
Times and durations are in seconds; velocity is between 0 and 1.
""",
    )
)

register_prompt(
    PromptVersion(
        name="narrator_v1",
        version="1.0.0",
        description="Timed narration script explaining the audio in sync",
        template="""\
You are an AI narrator, creating a compelling, human-readable story of the data, in \
sync with the generated audio.

You will receive the analysis of the data, and the audio mapping that translates data \
points into musical elements.

Synthesize the information to generate a timed script (an array of objects), where each \
object has a timestamp (in seconds) and the text to be spoken at that time. Order the \
array by ascending timestamp.

Make sure the script explains to the user what they are hearing, and why it is \
significant, for example: "At 15 seconds, the sharp piano stabs represent the Q4 sales \
spike we identified."

Analysis: {analysis}
Audio Mapping: {audioMapping}

Output the narration script as a JSON array of objects with timestamp and text \
properties. For example:
[
  {{"timestamp": 0.5, "text": "The data begins its ascent..."}},
  {{"timestamp": 2.1, "text": "Notice the anomaly here."}}
]
""",
    )
)
