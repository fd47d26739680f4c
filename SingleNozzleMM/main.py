#!/usr/local/bin/python3
# -*- coding: utf-8 -*-
from pathlib import Path
from contextlib import contextmanager
from rich.console import Console
from rich.markup import escape
import argparse, os, re, shutil, sys, time

__version__ = "1.0.0"

PROG_NAME = "multi-material-single-nozzle"

TOOLCHANGE_START = "; CP TOOLCHANGE START"
TOOLCHANGE_END = "; CP TOOLCHANGE END"
TOOLCHANGE_UNLOAD = "; CP TOOLCHANGE UNLOAD"
TOOLCHANGE_WIPE = "; CP TOOLCHANGE WIPE"
TOTAL_TOOLCHANGES_ID = "; total toolchanges = "
WIPE_TOWER_ID = "; wipe_tower = "
COLOR_CHANGE = "M600"
TEMP_FILE_PREFIX = "gcode"

unsigned_int = re.compile("\\+?[0-9]+")


class SlicerConfig:
    def __init__(self, wipe_tower=False, total_toolchanges=0):
        self.wipe_tower = wipe_tower
        self.total_toolchanges = total_toolchanges

    @classmethod
    def read(cls, gcode_lines):
        config = cls()
        for line in gcode_lines:
            config.update_from_line(line)
        return config

    def update_from_line(self, line):
        if line.startswith(TOTAL_TOOLCHANGES_ID):
            value = line[len(TOTAL_TOOLCHANGES_ID):]
            if unsigned_int.fullmatch(value) is not None:
                self.total_toolchanges = int(value)
        elif line.startswith(WIPE_TOWER_ID):
            value = line[len(WIPE_TOWER_ID):]
            if value == "1":
                self.wipe_tower = True
            elif value == "0":
                self.wipe_tower = False

    def __str__(self):
        return f"SlicerConfig(wipe_tower={self.wipe_tower}, total_toolchanges={self.total_toolchanges})"

    def __repr__(self):
        return str(self)

def replace_toolchanges(gcode_lines):
    skip_block = False
    for line in gcode_lines:
        if line.startswith(TOOLCHANGE_START):
            skip_block = True
        elif line.startswith(TOOLCHANGE_END):
            yield COLOR_CHANGE
            skip_block = False
        elif not skip_block:
            yield line

def replace_unloads(gcode_lines, total_toolchanges):
    skip_block = False
    toolchanges = 0
    for line in gcode_lines:
        # UNLOAD ... WIPE sits inside of START ... END, so it is checked first
        if line.startswith(TOOLCHANGE_UNLOAD):
            skip_block = True
            continue
        if line.startswith(TOOLCHANGE_WIPE):
            yield COLOR_CHANGE
            skip_block = False
            continue

        if line.startswith(TOOLCHANGE_START):
            toolchanges += 1
            # Anything past the real toolchange count is the slicer's leftover block, remove all of it
            if toolchanges > total_toolchanges:
                skip_block = True
                continue
        elif line.startswith(TOOLCHANGE_END):
            if toolchanges > total_toolchanges:
                skip_block = False
                continue

        if not skip_block:
            yield line

def rewrite_gcode_lines(gcode_lines, config):
    if config.wipe_tower:
        return replace_unloads(gcode_lines, config.total_toolchanges)
    return replace_toolchanges(gcode_lines)

def read_gcode_lines(f):
    for line in f:
        yield line.rstrip("\n")

def write_gcode_lines(gcode_lines, f):
    for line in gcode_lines:
        f.write(line)
        f.write("\n")

@contextmanager
def replace_file(file_path):
    file_path = Path(file_path)
    # Temp file sits next to the target so os.replace stays on one filesystem
    temp_path = file_path.with_name(f"{TEMP_FILE_PREFIX}_{time.time_ns()}")
    f = temp_path.open("x", encoding="utf-8", errors="surrogateescape", newline="\n")
    try:
        with f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        if file_path.exists():
            shutil.copymode(file_path, temp_path)
        os.replace(temp_path, file_path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

def process_gcode_file(input_path, output_path=None):
    input_path = Path(input_path)
    output_path = Path(output_path) if output_path is not None else input_path
    with replace_file(output_path) as out, input_path.open(encoding="utf-8", errors="surrogateescape") as f:
        config = SlicerConfig.read(read_gcode_lines(f))
        f.seek(0)
        write_gcode_lines(rewrite_gcode_lines(read_gcode_lines(f), config), out)
    return config

class UsageArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_help(sys.stdout)
        self.exit(2, f"{self.prog}: error: {message}\n")

def get_parser():
    parser = UsageArgumentParser(
        prog=PROG_NAME,
        description="Cleans up PrusaSlicer G-code to use single nozzle multi-material setup.",
        epilog=f"Version: {__version__}",
    )
    parser.add_argument("file_path", help="The path to the gcode file to process.")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--output-file-path", help="The path to save the processed output to. If not given, the original file is overwritten.")
    return parser

def main(argv=None):
    args = get_parser().parse_args(argv)
    console = Console(soft_wrap=True, emoji=False)
    error_console = Console(stderr=True, soft_wrap=True, emoji=False)

    gcode_path = Path(args.file_path)
    output_file_path = Path(args.output_file_path) if args.output_file_path is not None else gcode_path

    console.print("Loading G-code...")
    try:
        config = process_gcode_file(gcode_path, output_file_path)
    except OSError as e:
        error_console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        sys.exit(1)

    if config.wipe_tower:
        count = config.total_toolchanges
        console.print(f"Wipe tower enabled, replaced unloads of {count} toolchange{'s' if count != 1 else ''} with {COLOR_CHANGE}.")
    else:
        console.print(f"Replaced toolchanges with {COLOR_CHANGE}.")
    if output_file_path != gcode_path:
        console.print(f"G-code saved to '{escape(str(output_file_path))}'.")
    console.print(f"Success: '{escape(str(gcode_path))}' processed.")


if __name__ == "__main__":
    main()
