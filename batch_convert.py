"""
Batch DAE Converter
Converts every scene document in a folder into a JSON payload of
index-buffer meshes, skeletons and bone animations
"""
import json
import logging
import sys
from pathlib import Path

from dae_lib.dae_convert import VERTEX_FORMATS, ConversionOptions, convert_file
from dae_lib.dae_parser import ColladaError


class BatchDAEConverter:
    """Converts .dae files found under an input folder"""

    # Default paths
    DEFAULT_INPUT = "input"
    DEFAULT_OUTPUT = "output"

    def __init__(self, input_folder=None, output_folder=None, options=None):
        # Use defaults if not provided
        self.input_folder = Path(input_folder or self.DEFAULT_INPUT)
        self.output_folder = Path(output_folder or self.DEFAULT_OUTPUT)
        self.options = options or ConversionOptions()
        self.options.validate()

        self.output_folder.mkdir(parents=True, exist_ok=True)

    def convert_dae(self, dae_path, output_path):
        """Convert one DAE file to a JSON payload"""
        print(f"Processing: {dae_path.name}")
        try:
            result = convert_file(dae_path, self.options)
        except (ColladaError, OSError) as e:
            print(f"  [ERROR] {e}")
            return False

        for failure in result.failures:
            print(f"  Warning: {failure.describe()}")

        if not result.meshes:
            print(f"  Warning: No meshes converted")
            return False

        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=1)

        print(f"  [OK] Saved: {output_path.name} "
              f"({len(result.meshes)} meshes, {len(result.skeletons)} skeletons)")
        return True

    def batch_process(self):
        """Process all DAE files"""
        dae_files = sorted(self.input_folder.rglob('*.dae'))

        if not dae_files:
            print(f"No DAE files found in {self.input_folder}")
            return 0

        print(f"Found {len(dae_files)} DAE files")
        print()

        success_count = 0
        for idx, dae_file in enumerate(dae_files, 1):
            relative_path = dae_file.relative_to(self.input_folder)
            output_file = self.output_folder / f"{relative_path.stem}.json"

            print(f"[{idx}/{len(dae_files)}] ", end='')
            if self.convert_dae(dae_file, output_file):
                success_count += 1

        print(f"\n{'='*60}")
        print(f"Completed: {success_count}/{len(dae_files)} files")
        print(f"{'='*60}")
        return success_count


def main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description='Batch convert DAE scene documents to JSON payloads')
    parser.add_argument('input_folder', nargs='?', default=None,
                        help=f'Folder containing DAE files (default: {BatchDAEConverter.DEFAULT_INPUT})')
    parser.add_argument('output_folder', nargs='?', default=None,
                        help=f'Folder to save JSON files (default: {BatchDAEConverter.DEFAULT_OUTPUT})')
    parser.add_argument('--vertex-format', default='p3n3m2', choices=sorted(VERTEX_FORMATS),
                        help='Vertex format for static meshes')
    parser.add_argument('--skinned-vertex-format', default='p3n3m2b4', choices=sorted(VERTEX_FORMATS),
                        help='Vertex format for skinned meshes')
    parser.add_argument('--nodes', action='store_true',
                        help='Also emit the node hierarchy')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Show conversion diagnostics')

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    options = ConversionOptions(
        vertex_format=args.vertex_format,
        skinned_vertex_format=args.skinned_vertex_format,
        include_nodes=args.nodes,
    )
    converter = BatchDAEConverter(args.input_folder, args.output_folder, options)
    converter.batch_process()
    return 0


if __name__ == "__main__":
    sys.exit(main())
