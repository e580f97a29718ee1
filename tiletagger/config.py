
OLLAMA_DEFAULT_HOST = "http://localhost:11434"
OLLAMA_TIMEOUT_S = 300.0

VISION_MODEL = "llava:13b"
SUMMARY_MODEL = "mistral:7b"

CONFIDENCE_THRESHOLD = 50
TAG_PASSES = 1
MAX_WORKERS = 4

# Tile geometry defaults.
TILE_WIDTH = 672
TILE_HEIGHT = 672
MAX_PIXELS = 2_000_000
MAX_CROPS = 4
TILE_OVERLAP = 0.5
CROP_BOUND_FACTOR = 1.5

TILE_FORMAT = "PNG"

# Versioned prompts (keep changes explicit + centralized).
VISIBLE_OBJECTS = "that are visible in the image"

SUMMARY_PROMPT = (
    "You are a professional SEO specialist. Analyze the provided image and provide:"
    "    subject: The main subject of the image as a single word. The subject can be an object or improper noun."
    "    description: A short description of the image no longer than 20 words."
    " No introductions, explanations, or extra text."
    " Respond using JSON."
)

TAGS_PROMPT = (
    "You are assembling a list of tags for a web application that will be used for browsing images"
    " and filtering images by tags."
    " Analyze the provided image of a {subject} and identify the objects {objects}."
    " If an object is found, provide: "
    "    object: An object from the list of objects."
    "    confidence: A confidence level number between 0 and 100 based on clarity, visibility,"
    " and similarity to known references."
    " The object should clearly be visible in the image and you must be confident that the object"
    " is correctly identified."
    " No introductions, explanations, or extra text."
    " Respond using JSON."
)

DESCRIBE_PROMPT = (
    "Describe every part, feature or item in this photo. Only include items that are present and visible"
    " in the image. Ignore items that are only visible through glass and ignore items in the background."
    " Ignore items that are implied, visible in reflections, not present or not visible in the image"
    " and do not include them in the description."
)

REDUCE_FROM_VOCABULARY = (
    "Using this list of tags: [{tags}], reduce the list of tags to the tags that are mentioned"
    " or described in the description. Do not add new tags and do not change the tags."
)

REDUCE_ANY_OBJECT = "List the objects that are mentioned or described in the description, one or two words each."

REDUCE_PROMPT = """Follow the instructions using this description of an image: {description}

{instruction}
Do not list tags that are implied, not visible, visible in reflections or not present in the description.

Answer in exactly this format:
<tags as a comma-separated list on the first line>

<a summary of the subject of the image in less than 18 words, suitable for an HTML img alt tag>

No introductions, explanations, or extra text.
"""

SUMMARY_SCHEMA = {
    "type": "object",
    "properties": {
        "subject": {"type": "string"},
        "description": {"type": "string"},
    },
    "required": ["subject", "description"],
}

TAGS_SCHEMA = {
    "type": "object",
    "properties": {
        "tags": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "object": {"type": "string"},
                    "confidence": {"type": "number"},
                },
                "required": ["object", "confidence"],
            },
        },
    },
    "required": ["tags"],
}
