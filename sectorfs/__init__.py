"""Block devices, MBR/GPT partitions, FAT32 volumes, ELF64 loading and a line-buffered console."""

__version__ = "0.1.0"
__all__ = ["block", "console", "elf", "fat32", "fat32_layout", "modes"]