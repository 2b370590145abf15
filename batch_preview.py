"""
Batch MDX Previewer
Parses every .mdx in a folder, poses one frame of a sequence and draws a
flat-shaded CPU preview (mesh + particles) with Pillow
"""
import argparse
import logging
import math
import sys
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw

from mdxlib.mdx_diagnostics import format_summary
from mdxlib.mdx_parser import MdxParseError, parse_file
from mdxlib.mdx_particles import ParticleConfig
from mdxlib.mdx_playback import PlaybackSession

LIGHT_DIR = np.array([0.4, -0.5, 0.75]) / np.linalg.norm([0.4, -0.5, 0.75])
BASE_COLOR = np.array([180, 180, 190])
BACKGROUND = (255, 255, 255)


class MDXPreviewRenderer:
    """Software renderer for MDX files, one JPG per model"""

    # Default paths
    DEFAULT_INPUT = "input/models"
    DEFAULT_OUTPUT = "output"

    def __init__(self, input_folder=None, output_folder=None, sequence=0, frame_ms=0,
                 size=(800, 600), particle_config=None):
        self.input_folder = Path(input_folder or self.DEFAULT_INPUT)
        self.output_folder = Path(output_folder or self.DEFAULT_OUTPUT)
        self.sequence = sequence
        self.frame_ms = frame_ms
        self.width, self.height = size
        self.particle_config = particle_config or ParticleConfig()
        self.file_count = 0

        self.output_folder.mkdir(parents=True, exist_ok=True)
        self._cleanup_output_folder()

    def _cleanup_output_folder(self):
        """Remove existing JPG files from output folder"""
        jpg_files = list(self.output_folder.glob('*.jpg'))
        if jpg_files:
            print(f"Cleaning up {len(jpg_files)} existing JPG files from output folder...")
            for jpg_file in jpg_files:
                try:
                    jpg_file.unlink()
                except OSError as e:
                    print(f"  Warning: Could not delete {jpg_file.name}: {e}")

    def _project(self, points, center, extent):
        """Isometric orthographic projection to pixel coordinates plus depth."""
        yaw = math.radians(225)
        pitch = math.radians(30)
        rel = points - center
        x = rel[:, 0] * math.cos(yaw) - rel[:, 1] * math.sin(yaw)
        y = rel[:, 0] * math.sin(yaw) + rel[:, 1] * math.cos(yaw)
        screen_y = rel[:, 2] * math.cos(pitch) - y * math.sin(pitch)
        depth = y * math.cos(pitch) + rel[:, 2] * math.sin(pitch)
        scale = 0.8 * min(self.width, self.height) / max(extent, 1e-6)
        px = self.width / 2 + x * scale
        py = self.height / 2 - screen_y * scale
        return np.stack([px, py], axis=1), depth

    def render_frame(self, doc, frame):
        image = Image.new('RGB', (self.width, self.height), BACKGROUND)
        draw = ImageDraw.Draw(image)

        positions = frame.posed_vertices.positions
        if len(positions) == 0:
            return image
        bbox_min = positions.min(axis=0)
        bbox_max = positions.max(axis=0)
        center = (bbox_min + bbox_max) / 2
        extent = float(np.linalg.norm(bbox_max - bbox_min))

        screen, depth = self._project(positions, center, extent)
        triangles = doc.indices.reshape(-1, 3).astype(np.int64)
        if len(triangles):
            v0, v1, v2 = (positions[triangles[:, k]] for k in range(3))
            normals = np.cross(v1 - v0, v2 - v0)
            lengths = np.linalg.norm(normals, axis=1, keepdims=True)
            normals = normals / np.where(lengths > 1e-12, lengths, 1.0)
            shade = 0.35 + 0.65 * np.abs(normals @ LIGHT_DIR)

            # painter's algorithm: far triangles first
            order = np.argsort(depth[triangles].mean(axis=1))[::-1]
            for t in order:
                color = tuple(int(c) for c in BASE_COLOR * shade[t])
                draw.polygon([tuple(screen[i]) for i in triangles[t]], fill=color)

        for emitter_particles in frame.particles:
            if not emitter_particles:
                continue
            points = np.array([p.position for p in emitter_particles])
            pts, _ = self._project(points, center, extent)
            for p, (x, y) in zip(emitter_particles, pts):
                rgb = tuple(int(255 * min(max(c, 0.0), 1.0)) for c in p.color)
                r = max(1, int(2 * p.scale))
                draw.ellipse([x - r, y - r, x + r, y + r], fill=rgb)
        return image

    def render_mdx(self, mdx_path, output_path):
        """Render MDX file to image"""
        print(f"Processing: {mdx_path.name}")
        try:
            doc = parse_file(str(mdx_path))
        except (MdxParseError, OSError) as e:
            print(f"  [ERROR] {e}")
            return False

        if not len(doc.vertices):
            print("  Warning: No geometry found")
            return False

        session = PlaybackSession(doc, self.sequence, force_particle_visible=True,
                                  particle_config=self.particle_config)
        # step up to the requested frame so particles have had time to spawn
        frame = session.tick(0.0)
        while session.elapsed_ms < self.frame_ms:
            frame = session.tick(session.max_dt)

        image = self.render_frame(doc, frame)
        image.save(output_path, 'JPEG', quality=90)
        print(format_summary(doc))
        print(f"  [OK] Saved: {output_path.name}")
        return True

    def batch_process(self):
        """Process all MDX files"""
        mdx_files = sorted(self.input_folder.rglob('*.mdx'))
        self.file_count = len(mdx_files)

        if not mdx_files:
            print(f"No MDX files found in {self.input_folder}")
            return 0

        print(f"Found {len(mdx_files)} MDX files\n")

        success_count = 0
        for idx, mdx_file in enumerate(mdx_files, 1):
            relative_path = mdx_file.relative_to(self.input_folder)
            output_file = self.output_folder / f"{relative_path.stem}_iso.jpg"

            print(f"[{idx}/{len(mdx_files)}] ", end='')
            if self.render_mdx(mdx_file, output_file):
                success_count += 1

        print(f"\n{'='*60}")
        print(f"Completed: {success_count}/{len(mdx_files)} files")
        print(f"{'='*60}")
        return success_count


def main(argv=None):
    parser = argparse.ArgumentParser(description='Batch preview MDX files')
    parser.add_argument('input_folder', nargs='?', default=None,
                        help=f'Folder containing MDX files (default: {MDXPreviewRenderer.DEFAULT_INPUT})')
    parser.add_argument('output_folder', nargs='?', default=None,
                        help=f'Folder to save JPG images (default: {MDXPreviewRenderer.DEFAULT_OUTPUT})')
    parser.add_argument('--sequence', '-s', type=int, default=0, help='Sequence index to pose')
    parser.add_argument('--frame', '-f', type=int, default=0, help='Milliseconds into the sequence')
    parser.add_argument('--max-particles', type=int, default=ParticleConfig.max_particles)
    parser.add_argument('--seed', type=int, default=ParticleConfig.seed)
    parser.add_argument('--verbose', '-v', action='store_true', help='Show parser debug output')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')

    config = ParticleConfig(max_particles=args.max_particles, seed=args.seed)
    renderer = MDXPreviewRenderer(args.input_folder, args.output_folder,
                                  sequence=args.sequence, frame_ms=args.frame,
                                  particle_config=config)
    success_count = renderer.batch_process()
    return 0 if success_count == renderer.file_count else 1


if __name__ == "__main__":
    sys.exit(main())
