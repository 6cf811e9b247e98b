#!/usr/bin/env python3
"""
Example: Batch save images listed in a jobs file

Each job is a JSON object with "image_url" plus any metadata fields
(prompt, negative_prompt, steps, cfg_scale, seed, sampler, model,
provider, width, height, page_url).
"""

import asyncio
import json
import sys
import tempfile
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from image_metahub import run_main_script


EXAMPLE_JOBS = [
    {
        "image_url": "https://upload.wikimedia.org/wikipedia/commons/4/47/PNG_transparency_demonstration_1.png",
        "prompt": "two dice on a transparent background",
        "steps": 30,
        "sampler": "Euler a",
        "seed": 1234,
    },
    {
        "image_url": "https://upload.wikimedia.org/wikipedia/commons/3/3f/JPEG_example_flower.jpg",
        "prompt": "a purple flower, macro photograph",
        "negative_prompt": "blurry",
        "cfg_scale": 7.5,
        "provider": "Example Generator",
    },
]


async def main():
    print("Image MetaHub - Batch Save Example")
    print("=" * 60)

    if len(sys.argv) > 1:
        jobs_file = sys.argv[1]
        print(f"\nReading jobs from: {jobs_file}")
        return await run_main_script(["--jobs", jobs_file, "--no-relay"])

    print("\nUsing example jobs (pass a jobs.json path to use your own)\n")
    with tempfile.TemporaryDirectory() as tmp:
        jobs_file = Path(tmp) / "jobs.json"
        jobs_file.write_text(json.dumps(EXAMPLE_JOBS, indent=2), encoding="utf-8")
        return await run_main_script(["--jobs", str(jobs_file), "--no-relay"])


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
