"""
CIM Service - underwriting memo generation with OpenAI
"""
import io
import logging
from typing import Optional

from openai import OpenAI
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from config.settings import settings
from services.cim_rating import strip_rating_json

logger = logging.getLogger(__name__)

MAX_CIM_CHARS = 200_000

MEMO_HEADINGS = (
    "Executive Summary",
    "Key Metrics",
    "Business Overview",
    "Financial Quality",
    "Customers & Concentration",
    "Operations & Owner Dependency",
    "Risks / Red Flags",
    "Diligence Questions",
    "Deal Structure Thoughts",
    "Investment Memo",
)


def build_memo_prompt(mode: str, text: str) -> str:
    headings = "\n".join(f"## {h}" for h in MEMO_HEADINGS)
    return f"""You are an M&A underwriter. Produce a concise underwriting memo.

CRITICAL RULES (must follow):
- DO NOT output any score, grade, rating, verdict, or recommendation label.
- DO NOT output JSON.
- DO NOT write "RATING_JSON".
- Return ONLY the memo sections below, in plain text, using these headings EXACTLY.

{headings}

Mode: {mode}

CIM TEXT:
{text}"""


def extract_upload_text(data: bytes, filename: Optional[str] = None, content_type: Optional[str] = None) -> str:
    """
    Turn an uploaded CIM into plain text.

    PDFs go through pypdf page by page; anything else is decoded as UTF-8
    with replacement characters. The result is capped at 200,000 chars.

    Args:
        data: Raw upload bytes
        filename: Original filename (used to spot PDFs)
        content_type: Upload content type (used to spot PDFs)

    Returns:
        Extracted text, possibly empty
    """
    is_pdf = (
        data.startswith(b"%PDF")
        or (content_type or "").lower() == "application/pdf"
        or (filename or "").lower().endswith(".pdf")
    )

    if is_pdf:
        text_parts = []
        try:
            reader = PdfReader(io.BytesIO(data))
            for page in reader.pages:
                page_text = page.extract_text()
                if page_text:
                    text_parts.append(page_text)
        except PdfReadError as e:
            logger.warning(f"PDF text extraction failed for {filename or 'upload'}: {e}")
            return ""
        text = "\n\n".join(text_parts)
    else:
        text = data.decode("utf-8", errors="replace")

    return text[:MAX_CIM_CHARS]


class CimService:
    """Service class for generating CIM underwriting memos"""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_memo_model

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def generate_memo(self, text: str, mode: str = "deep") -> str:
        """
        Ask the model for the fixed-heading underwriting memo.

        Args:
            text: CIM text
            mode: "fast" or "deep"; passed through to the prompt

        Returns:
            Memo text with any stray RATING_JSON block removed

        Raises:
            openai.OpenAIError: If the API call fails
        """
        client = OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": build_memo_prompt(mode, text)}],
        )
        content = response.choices[0].message.content if response.choices else ""
        return strip_rating_json(content or "")


def get_cim_service() -> CimService:
    return CimService()
