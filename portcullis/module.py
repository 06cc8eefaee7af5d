import importlib
import logging
from pathlib import Path

from portcullis.types.module import CoreModule

portcullis_error_logger = logging.getLogger("portcullis.error")

core_module_list: list[CoreModule] = []

package_root = Path(__file__).parent

for endpoints_file in sorted(package_root.glob("core/*/endpoints_*.py")):
    relative_path = endpoints_file.relative_to(package_root).with_suffix("")
    endpoint_module = importlib.import_module(
        ".".join((package_root.name, *relative_path.parts)),
    )
    if hasattr(endpoint_module, "core_module"):
        core_module: CoreModule = endpoint_module.core_module
        core_module_list.append(core_module)
    else:
        portcullis_error_logger.error(
            f"Core module {endpoints_file} does not declare a core module. It won't be enabled.",
        )

all_modules = core_module_list
