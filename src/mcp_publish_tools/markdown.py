"""Markdown -> Confluence storage format.

Pandoc renders Markdown to HTML; BeautifulSoup then rewrites the HTML
constructs Confluence stores differently:

- <img src="local.png">   -> <ac:image><ri:attachment ri:filename="local.png"/></ac:image>
- <img src="https://...">  -> <ac:image><ri:url ri:value="https://..."/></ac:image>
- <pre><code>             -> code macro with the body in CDATA
"""

import logging
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup, CData, Tag

from .errors import ConversionError
from .pandoc import PandocOptions, PandocService

logger = logging.getLogger(__name__)

_HIGHLIGHT_CLASSES = {"sourceCode", "numberSource", "numberLines"}


def is_absolute_url(src: str) -> bool:
    return bool(urlparse(src).scheme in ("http", "https", "data"))


def attachment_name(src: str) -> str:
    return PurePosixPath(unquote(urlparse(src).path)).name


def _code_language(pre: Tag, code: Optional[Tag]) -> str:
    for tag in (code, pre):
        if tag is None:
            continue
        for cls in tag.get("class") or []:
            if cls not in _HIGHLIGHT_CLASSES:
                return cls.removeprefix("language-")
    return ""


class StorageFormatter:
    """Rewrites Pandoc HTML into Confluence storage markup."""

    def __init__(self, html: str):
        self.soup = BeautifulSoup(html, "html.parser")
        self.attachments: list[str] = []

    def _macro(self, name: str, params: dict[str, str], plain_text_body: Optional[str] = None) -> Tag:
        macro = self.soup.new_tag("ac:structured-macro")
        macro["ac:name"] = name
        macro["ac:schema-version"] = "1"
        for key, value in params.items():
            if not value:
                continue
            param = self.soup.new_tag("ac:parameter")
            param["ac:name"] = key
            param.string = value
            macro.append(param)
        if plain_text_body is not None:
            body = self.soup.new_tag("ac:plain-text-body")
            body.append(CData(plain_text_body))
            macro.append(body)
        return macro

    def _image(self, img: Tag) -> Tag:
        src = img.get("src") or ""
        ac_image = self.soup.new_tag("ac:image")
        for attr in ("width", "height"):
            if img.has_attr(attr):
                ac_image[f"ac:{attr}"] = img[attr]
        if img.get("alt"):
            ac_image["ac:alt"] = img["alt"]

        if is_absolute_url(src):
            ac_image.append(self.soup.new_tag("ri:url", attrs={"ri:value": src}))
        else:
            filename = attachment_name(src)
            self.attachments.append(filename)
            ac_image.append(self.soup.new_tag("ri:attachment", attrs={"ri:filename": filename}))
        return ac_image

    def transform_images(self) -> None:
        for figure in self.soup.find_all("figure"):
            img = figure.find("img")
            if img is not None:
                figure.replace_with(self._image(img))
        for img in self.soup.find_all("img"):
            img.replace_with(self._image(img))

    def transform_code_blocks(self) -> None:
        for pre in self.soup.find_all("pre"):
            code = pre.find("code")
            language = _code_language(pre, code)
            content = (code or pre).get_text().rstrip("\n")
            pre.replace_with(self._macro("code", {"language": language}, content))

        # Pandoc wraps highlighted blocks in <div class="sourceCode">
        for div in self.soup.find_all("div", class_="sourceCode"):
            div.unwrap()

    def render(self) -> str:
        self.transform_code_blocks()
        self.transform_images()
        return str(self.soup)


def html_to_storage(html: str) -> str:
    return StorageFormatter(html).render()


class MarkdownConverter:
    """Converts Markdown documents to Confluence storage format."""

    def __init__(self, pandoc: PandocService):
        self.pandoc = pandoc

    async def to_html(self, markdown: str) -> str:
        result = await self.pandoc.convert(
            markdown,
            PandocOptions(input_format="markdown", output_format="html"),
        )
        if not result.success:
            raise ConversionError(f"Markdown conversion failed: {result.error}")
        return result.output or ""

    async def convert_to_storage(self, markdown: str) -> str:
        """
        Raises:
            ConversionError: If Pandoc fails
        """
        if not markdown.strip():
            return ""
        return html_to_storage(await self.to_html(markdown))
