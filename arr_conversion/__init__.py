"""Upload a 3D asset to Azure Blob Storage and convert it with Azure Remote Rendering."""

__version__ = "0.1.0"
