import asyncio
import logging
import os
from typing import List
from .llm import TextGenerator
from .media import decode_artifact, panel_file_name, write_bytes
from .models import ImageSet, ImageStageResult, PanelResult, Scene
from .progress import ProgressReporter
from .prompts import PANEL_PROMPT_TEMPLATE
from .settings import EXTERNAL_CALL_TIMEOUT_S, GENERATED_DIR, GENERATED_URL_PREFIX, PANEL_DELAY_S
from .stability_client import PANEL_PARAMS, ImageSynthesizer

logger = logging.getLogger(__name__)

IMAGES_START = 30
IMAGES_SPAN = 60


def panel_progress(index: int, total: int) -> int:
    """Progress while rendering panel ``index`` of ``total``, floored."""
    return IMAGES_START + (index * IMAGES_SPAN) // total


def build_panel_prompt_request(scene: Scene, style: str, genre: str) -> str:
    return PANEL_PROMPT_TEMPLATE.format(
        panel_number=scene.panel_number,
        setting=scene.setting,
        action=scene.action,
        characters=", ".join(scene.characters) if scene.characters else "None specified",
        mood=scene.mood,
        style=style,
        genre=genre,
    )


class ImageStage:
    def __init__(
        self,
        text_generator: TextGenerator,
        image_synthesizer: ImageSynthesizer,
        reporter: ProgressReporter,
        output_root: str = GENERATED_DIR,
        url_prefix: str = GENERATED_URL_PREFIX,
        delay: float = PANEL_DELAY_S,
        timeout: float = EXTERNAL_CALL_TIMEOUT_S,
    ):
        self.text_generator = text_generator
        self.image_synthesizer = image_synthesizer
        self.reporter = reporter
        self.output_root = output_root
        self.url_prefix = url_prefix.rstrip("/")
        self.delay = delay
        self.timeout = timeout

    async def _render_panel(self, scene: Scene, panel_number: int, style: str, genre: str,
                            folder: str, job_id: str) -> PanelResult:
        prompt_text = await asyncio.wait_for(
            self.text_generator.generate(build_panel_prompt_request(scene, style, genre)), self.timeout
        )
        image_prompt = prompt_text.strip()
        if not image_prompt:
            raise RuntimeError("prompt refinement returned an empty prompt")

        artifact = await asyncio.wait_for(
            self.image_synthesizer.generate(image_prompt, dict(PANEL_PARAMS)), self.timeout
        )
        data, ext = decode_artifact(artifact)
        file_name = panel_file_name(panel_number, ext)
        write_bytes(os.path.join(folder, file_name), data)
        logger.info(f"Saved panel {panel_number} for job {job_id} as {file_name}")
        return PanelResult(
            panel_number=panel_number,
            file_name=file_name,
            image_path=f"{self.url_prefix}/{job_id}/{file_name}",
            dialogue=scene.dialogue,
            action=scene.action,
            setting=scene.setting,
        )

    async def generate(self, scenes: List[Scene], style: str, genre: str, job_id: str) -> ImageStageResult:
        folder = os.path.join(self.output_root, job_id)
        try:
            os.makedirs(folder, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create panel folder {folder}: {e}")
            return ImageStageResult(reason=f"could not create image folder: {e}")

        panels: List[PanelResult] = []
        total = len(scenes)
        for i, scene in enumerate(scenes):
            panel_number = scene.panel_number if scene.panel_number is not None else i + 1
            await self.reporter.advance(
                job_id,
                progress=panel_progress(i, total),
                current_step=f"Generating Panel {panel_number}...",
            )

            try:
                panels.append(await self._render_panel(scene, panel_number, style, genre, folder, job_id))
            except Exception as e:
                logger.error(f"Error generating panel {panel_number} for job {job_id}: {e!r}")
                panels.append(PanelResult(
                    panel_number=panel_number,
                    error="Failed to generate",
                    dialogue=scene.dialogue,
                    action=scene.action,
                ))

            # Small delay to avoid rate limits
            await asyncio.sleep(self.delay)

        return ImageStageResult(images=ImageSet(folder=folder, panels=panels))
