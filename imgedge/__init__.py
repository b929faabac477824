from importlib import metadata
from pathlib import Path

VERSION_FILE = Path(__file__).parent.resolve().with_name('VERSION')


def get_version(version_file: Path = VERSION_FILE) -> str:
  # The Lambda bundle and source checkouts carry VERSION; an installed wheel only has metadata.
  if version_file.is_file():
    return version_file.read_text().strip()
  return metadata.version('imgedge')


version = get_version()
