#!/usr/bin/env python3
"""
Example: Save one generated image with its prompt embedded

This script demonstrates basic usage of the Image MetaHub saver.
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import image_metahub
sys.path.insert(0, str(Path(__file__).parent.parent))

from image_metahub import (
    DirectoryPersistence,
    ImageAcquirer,
    ImageReference,
    RemoteDownloader,
    build_metadata_record,
    build_parameters_string,
    save_with_metadata,
)


async def main():
    """Save an image URL with metadata entered at the prompt."""

    # Example URL - replace with a real generated image
    example_url = "https://upload.wikimedia.org/wikipedia/commons/4/47/PNG_transparency_demonstration_1.png"

    print("Image MetaHub - Single Image Example")
    print("=" * 60)

    if len(sys.argv) > 1:
        image_url = sys.argv[1]
    else:
        image_url = input("Enter image URL (or press Enter for example): ").strip()
        if not image_url:
            print(f"\nUsing example URL: {example_url}\n")
            image_url = example_url

    form = {
        "prompt": input("Prompt: ").strip(),
        "negative_prompt": input("Negative prompt (optional): ").strip(),
        "steps": input("Steps (optional): ").strip(),
        "seed": input("Seed (optional): ").strip(),
        "model": input("Model (optional): ").strip(),
    }

    image_ref = ImageReference(image_url)
    record = build_metadata_record(image_ref, form)
    output_dir = Path("saved_images")

    print("\nParameters to embed:")
    print("-" * 60)
    print(build_parameters_string(record) or "(empty)")
    print("-" * 60)

    result = await save_with_metadata(
        image_ref,
        record,
        acquirer=ImageAcquirer(),
        persistence=DirectoryPersistence(output_dir),
        downloader=RemoteDownloader(output_dir),
    )

    print(f"\n{result['Message']}")
    if result["Output Filename"] != "N/A":
        print(f"  Image:   {output_dir / result['Output Filename']}")
    if result["Sidecar Filename"] != "N/A":
        print(f"  Sidecar: {output_dir / result['Sidecar Filename']}")

    if result["Status"] == "Failed":
        sys.exit(1)


if __name__ == '__main__':
    asyncio.run(main())
