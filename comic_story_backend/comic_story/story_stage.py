import asyncio
import logging
from pydantic import ValidationError
from .llm import TextGenerator
from .models import GenerationRequest, Story, StoryResult
from .parsing import extract_json_object
from .prompts import STORY_PROMPT_TEMPLATE, STORY_SCHEMA
from .settings import EXTERNAL_CALL_TIMEOUT_S

logger = logging.getLogger(__name__)


def build_story_prompt(req: GenerationRequest) -> str:
    return STORY_PROMPT_TEMPLATE.format(
        topic=req.topic,
        genre=req.genre,
        style=req.style,
        panels=req.panel_count,
        schema=STORY_SCHEMA,
    )


def _normalize_panel_numbers(story: Story):
    """Renumber scenes by position unless every number is a distinct positive int."""
    numbers = [scene.panel_number for scene in story.scenes]
    usable = all(n is not None and n > 0 for n in numbers) and len(set(numbers)) == len(numbers)
    if usable:
        return
    logger.warning(f"Renumbering scenes by position; model gave panel numbers {numbers}")
    for index, scene in enumerate(story.scenes):
        scene.panel_number = index + 1


class StoryStage:
    def __init__(self, text_generator: TextGenerator, timeout: float = EXTERNAL_CALL_TIMEOUT_S):
        self.text_generator = text_generator
        self.timeout = timeout

    async def generate(self, req: GenerationRequest) -> StoryResult:
        """Ask the text generator for a story once; never raises."""
        try:
            text = await asyncio.wait_for(
                self.text_generator.generate(build_story_prompt(req)), self.timeout
            )
        except Exception as e:
            logger.error(f"Story generation call failed: {e!r}")
            return StoryResult(reason=f"text generation failed: {e}")

        extracted = extract_json_object(text)
        if not extracted.ok:
            logger.warning(f"No story in model output: {extracted.reason}")
            return StoryResult(reason=extracted.reason)

        try:
            story = Story.model_validate(extracted.value)
        except ValidationError as e:
            logger.warning(f"Story JSON has unexpected shape: {e}")
            return StoryResult(reason="story JSON has unexpected shape")

        _normalize_panel_numbers(story)
        logger.info(f"Story generated: {story.title!r} with {len(story.scenes)} scenes")
        return StoryResult(story=story)
