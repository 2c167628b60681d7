import io
import json

import pytest
from PIL import Image

from comic_story.jobs import ComicService
from comic_story.kv_storage import InMemoryJobStore


def make_story(panels=3, title="Robot Uprising"):
    return {
        "title": title,
        "summary": "The machines rise, the city falls silent.",
        "characters": [
            {"name": "Unit-7", "description": "A rusted worker robot", "role": "protagonist"},
            {"name": "Detective Vance", "description": "Tired human cop", "role": "antagonist"},
        ],
        "scenes": [
            {
                "panelNumber": n,
                "setting": f"Rainy alley {n}",
                "action": f"Something happens in panel {n}",
                "dialogue": f"Line {n}",
                "characters": ["Unit-7"],
                "mood": "tense",
            }
            for n in range(1, panels + 1)
        ],
    }


def story_response(story):
    return "Sure! Here is your comic:\n```json\n" + json.dumps(story, indent=2) + "\n```\nEnjoy!"


def png_bytes(fmt="PNG"):
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buf, fmt)
    return buf.getvalue()


class FakeTextGenerator:
    """Answers story prompts with ``story_text`` and panel prompts with a fixed prompt."""

    def __init__(self, story_text="", fail_story=False, fail_panels=()):
        self.story_text = story_text
        self.fail_story = fail_story
        self.fail_panels = set(fail_panels)
        self.prompts = []

    @property
    def story_calls(self):
        return [p for p in self.prompts if "comic story based on the topic" in p]

    async def generate(self, prompt):
        self.prompts.append(prompt)
        if "comic story based on the topic" in prompt:
            if self.fail_story:
                raise RuntimeError("text service unavailable")
            return self.story_text
        for n in self.fail_panels:
            if f"Panel {n}:" in prompt:
                raise RuntimeError(f"prompt refinement failed for panel {n}")
        return "  A moody noir comic panel, high quality, detailed  \n"


class FakeImageSynthesizer:
    """Returns a tiny PNG; raises on the 1-based call numbers in ``fail_calls``."""

    def __init__(self, fail_calls=(), payload=None):
        self.fail_calls = set(fail_calls)
        self.payload = payload
        self.calls = []

    async def generate(self, prompt, params):
        self.calls.append((prompt, params))
        if len(self.calls) in self.fail_calls:
            raise RuntimeError("synthesis failed")
        return self.payload if self.payload is not None else png_bytes()


class RecordingStore(InMemoryJobStore):
    """Keeps a snapshot of the record after every partial update."""

    def __init__(self):
        super().__init__()
        self.updates = []

    async def find_one_and_update(self, job_id, fields, skip_terminal=False):
        record = await super().find_one_and_update(job_id, fields, skip_terminal=skip_terminal)
        if record is not None:
            self.updates.append(record)
        return record


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def make_service(store, tmp_path):
    def _make(text_generator, image_synthesizer=None, **options):
        options.setdefault("output_root", str(tmp_path / "generated"))
        options.setdefault("delay", 0)
        return ComicService(
            store=store,
            text_generator=text_generator,
            image_synthesizer=image_synthesizer or FakeImageSynthesizer(),
            **options,
        )
    return _make
