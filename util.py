import argparse
import os
import sys

NIFTI_EXTENSIONS = ('.nii.gz', '.nii')

EXIT_USAGE = 1


class ArgumentParser(argparse.ArgumentParser):
    """argparse, but usage errors exit with status 1 (2 is reserved for unreadable inputs)."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f'{self.prog}: error: {message}\n')


def split_nifti_ext(filename):
    """'dir/sub-01_UNIT1.nii.gz' -> ('dir/sub-01_UNIT1', '.nii.gz')"""
    for ext in NIFTI_EXTENSIONS:
        if filename.lower().endswith(ext):
            return filename[:-len(ext)], filename[-len(ext):]
    return os.path.splitext(filename)


def add_prefix(filename, prefix):
    directory, basename = os.path.split(filename)
    return os.path.join(directory, prefix + basename)


def add_suffix(filename, suffix, default_ext='.nii'):
    base, ext = split_nifti_ext(filename)
    return f'{base}{suffix}{ext or default_ext}'
