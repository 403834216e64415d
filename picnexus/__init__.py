"""PicNexus 图床上传核心"""

__version__ = "0.1.0"
