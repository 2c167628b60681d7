STORY_SCHEMA = r"""{
  "title": "Comic Title",
  "summary": "Brief story summary",
  "characters": [
    {
      "name": "Character Name",
      "description": "Character description",
      "role": "protagonist/antagonist/supporting"
    }
  ],
  "scenes": [
    {
      "panelNumber": 1,
      "setting": "Description of the scene location",
      "action": "What's happening in this panel",
      "dialogue": "Character dialogue (if any)",
      "characters": ["Character names in this scene"],
      "mood": "Panel mood/tone"
    }
  ]
}"""


STORY_PROMPT_TEMPLATE = """Create a {panels}-panel comic story based on the topic: "{topic}"

Requirements:
- Genre: {genre}
- Style: {style}
- Panels: {panels}

Please structure your response as a JSON object with the following format:

{schema}

Make sure the story has:
1. A clear beginning, middle, and end
2. Engaging dialogue that fits the genre
3. Visual scenes that work well in comic format
4. Character development appropriate for the panel count
5. A satisfying conclusion

Return exactly {panels} scenes, numbered from 1."""


PANEL_PROMPT_TEMPLATE = """Create a detailed image prompt optimized for Stable Diffusion XL:

Panel {panel_number}:
- Setting: {setting}
- Action: {action}
- Characters: {characters}
- Mood: {mood}

Style: {style} comic book style
Genre: {genre}

Generate a single paragraph prompt with art style, character details, background, composition, lighting, and quality tags like "high quality", "detailed", "comic book art", "{style} style".
Return only the prompt paragraph."""
