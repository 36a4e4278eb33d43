"""mdkroki - mdBook preprocessor that renders diagrams through Kroki.

Diagrams can be written three ways in a chapter:

    ```kroki-mermaid
    graph TD; A-->B;
    ```

    <kroki type="plantuml" path="diagrams/seq.puml" root="source" />

    ![Box](kroki-ditaa:box.ditaa)

Usage:
    # book.toml
    [preprocessor.kroki-preprocessor]
    command = "mdkroki"

    # Outside mdBook
    mdkroki scan src/
    mdkroki render src --out rendered
"""

from importlib.metadata import version

__version__ = version("mdkroki")

__all__ = ["__version__"]
