"""Static prompt descriptor tables for the image synthesis adapter."""

from __future__ import annotations

import random
from typing import Dict, List, Optional

MIN_IMAGES_PER_GENERATION = 1
MAX_IMAGES_PER_GENERATION = 8
MAX_PROMPT_LENGTH = 500
DEFAULT_ASPECT_RATIO = "portrait"

STYLE_DESCRIPTORS: Dict[str, str] = {
    "Editorial": "high-fashion editorial styling with bold, magazine-ready composition",
    "Commercial": "clean commercial catalog styling that shows the garment clearly",
    "Artistic": "artistic, concept-driven styling with expressive color and framing",
    "Casual": "relaxed everyday street styling with a natural, candid feel",
    "Glamour": "polished glamour styling with luxurious textures and flattering light",
    "Vintage": "vintage film aesthetic with warm, slightly faded tones and subtle grain",
}

CAMERA_ANGLE_DESCRIPTORS: Dict[str, str] = {
    "Eye Level": "shot at eye level",
    "High Angle": "shot from a high angle looking down",
    "Low Angle": "shot from a low angle looking up",
    "Dutch Angle": "shot with a tilted dutch angle",
    "Over Shoulder": "shot over the shoulder",
    "Three Quarter": "shot from a three-quarter view",
    "Profile": "shot in profile",
    "Close Up": "framed as a close-up",
}

LIGHTING_DESCRIPTORS: Dict[str, str] = {
    "Natural Light": "soft natural daylight",
    "Studio Light": "bright, even studio lighting",
    "Dramatic Light": "dramatic high-contrast lighting",
    "Soft Light": "diffused soft lighting",
    "Backlight": "rim backlighting that outlines the silhouette",
    "Golden Hour": "warm golden hour sunlight",
}

ASPECT_RATIO_DESCRIPTORS: Dict[str, str] = {
    "portrait": "portrait (taller than it is wide)",
    "landscape": "landscape (wider than it is tall)",
    "square": "square",
}

ASPECT_RATIO_PROVIDER_VALUES: Dict[str, str] = {
    "portrait": "3:4",
    "landscape": "4:3",
    "square": "1:1",
}

CATALOG_POSES: List[str] = [
    # Standing
    "Standing confidently with hands on hips, looking directly at the camera.",
    "A relaxed standing pose, one hand in a pocket, with a slight, natural smile.",
    "Three-quarter view, looking over the shoulder towards the camera.",
    "Full body shot, standing straight with feet slightly apart, arms relaxed at the sides.",
    "Leaning casually against an invisible wall, one leg crossed in front of the other.",
    "A dynamic walking pose, captured mid-stride as if walking towards the viewer.",
    "Hands clasped gently in front, with a soft and approachable expression.",
    "Profile view, standing straight and looking forward, highlighting the silhouette of the outfit.",
    "Adjusting a cuff or a collar, creating a natural, candid moment.",
    "A simple pose with one hand gently touching the chin or side of the face.",
    # Seated
    "Sitting elegantly on a simple stool or block, legs crossed, looking at the camera.",
    "A casual seated pose on the floor, knees bent, leaning back on one hand.",
    "Sitting on a low bench, leaning forward with elbows on knees, looking thoughtful.",
    "Profile view while seated, showcasing the drape and fit of the clothing from the side.",
    # Detail and action
    "A close-up shot from the waist up, focusing on the details of the upper garment.",
    "A pose showing movement, like a gentle twirl to show the flow of a skirt or dress.",
    "Putting a hand in a pocket to show its placement on the garment.",
    "Looking down at their shoes, as if admiring them, good for full outfit shots.",
    "A laughing, candid pose, looking slightly away from the camera.",
    "Arms crossed over the chest with a confident and strong stance.",
    "A contrapposto pose, weight shifted to one foot, creating a natural S-curve in the body.",
    "Reaching for something just out of frame, creating a sense of action.",
    "A simple, elegant pose with hands held behind the back.",
    "A dynamic pose as if just turning around to face the camera.",
]

NEGATIVE_PROMPT = (
    "text, watermark, signature, logo, blurry, low-quality, out of focus, distorted, "
    "disfigured, bad anatomy, extra limbs, missing limbs, poorly drawn hands, jpeg artifacts, "
    "duplicate, cartoon, illustration, painting, 3d render, airbrushed skin, plastic skin"
)

GENERATION_STYLES = tuple(STYLE_DESCRIPTORS)
CAMERA_ANGLES = tuple(CAMERA_ANGLE_DESCRIPTORS)
LIGHTING_OPTIONS = tuple(LIGHTING_DESCRIPTORS)
VALID_ASPECT_RATIOS = tuple(ASPECT_RATIO_DESCRIPTORS)


def select_slot_poses(count: int, seed: Optional[str] = None) -> List[str]:
    """Pick ``count`` distinct poses, stable for a given seed.

    Seeding with the job id keeps a resumed run's slot poses identical to the
    first attempt.
    """
    rng = random.Random(seed)
    count = max(int(count), 0)
    if count <= len(CATALOG_POSES):
        return rng.sample(CATALOG_POSES, count)
    poses = rng.sample(CATALOG_POSES, len(CATALOG_POSES))
    return [poses[i % len(poses)] for i in range(count)]


def build_slot_prompt(
    base_prompt: str,
    *,
    pose: str,
    aspect_ratio: str = DEFAULT_ASPECT_RATIO,
    style: Optional[str] = None,
    camera_angle: Optional[str] = None,
    lighting: Optional[str] = None,
) -> str:
    """Compose the provider prompt for one slot."""
    lines = [
        "Create a professional fashion photograph of the person in the reference image.",
        "Keep their face, facial features, skin tone and identity exactly the same; "
        "only the styling, pose, background and photography change.",
        f"Creative direction: {base_prompt.strip()}",
        f"Pose: {pose}",
    ]
    if style and style in STYLE_DESCRIPTORS:
        lines.append(f"Style: {STYLE_DESCRIPTORS[style]}.")
    if camera_angle and camera_angle in CAMERA_ANGLE_DESCRIPTORS:
        lines.append(f"Camera: {CAMERA_ANGLE_DESCRIPTORS[camera_angle]}.")
    if lighting and lighting in LIGHTING_DESCRIPTORS:
        lines.append(f"Lighting: {LIGHTING_DESCRIPTORS[lighting]}.")
    ratio = ASPECT_RATIO_DESCRIPTORS.get(aspect_ratio, ASPECT_RATIO_DESCRIPTORS[DEFAULT_ASPECT_RATIO])
    lines.append(f"The photo must have a {ratio} aspect ratio.")
    lines.append(f"Do not include: {NEGATIVE_PROMPT}.")
    return "\n".join(lines)


def catalog_payload() -> Dict[str, object]:
    return {
        "styles": list(GENERATION_STYLES),
        "camera_angles": list(CAMERA_ANGLES),
        "lighting": list(LIGHTING_OPTIONS),
        "aspect_ratios": list(VALID_ASPECT_RATIOS),
        "default_aspect_ratio": DEFAULT_ASPECT_RATIO,
        "min_images": MIN_IMAGES_PER_GENERATION,
        "max_images": MAX_IMAGES_PER_GENERATION,
        "max_prompt_length": MAX_PROMPT_LENGTH,
    }
