from .atomic import atomic_json_dump, atomic_write_json, cleanup_temp_files

__all__ = ["atomic_json_dump", "atomic_write_json", "cleanup_temp_files"]
