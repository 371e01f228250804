from dataclasses import dataclass

from docbatch.config.settings import Settings
from docbatch.domain.exceptions import ValidationError

MEGABYTE = 1024 * 1024


@dataclass(frozen=True)
class DocumentKind:
    """Describes how one document subtype is validated and shipped to the worker."""

    code: str
    label: str
    worker_code: str
    extensions: tuple[str, ...]
    media_types: tuple[str, ...]
    max_file_bytes: int
    batch_cap: int
    content_field: str

    def accepts_filename(self, filename: str) -> bool:
        return filename.lower().endswith(self.extensions)

    def accepts_media_type(self, media_type: str | None) -> bool:
        if not media_type:
            return True
        return media_type.split(";")[0].strip().lower() in self.media_types


class KindRegistry:
    """Lookup table of the document kinds this deployment accepts."""

    def __init__(self, kinds: list[DocumentKind]) -> None:
        self._kinds = {kind.code: kind for kind in kinds}

    def get(self, code: str) -> DocumentKind:
        kind = self._kinds.get(code)
        if kind is None:
            raise ValidationError(
                f"Unknown document kind '{code}'. Choose from: {sorted(self._kinds)}"
            )
        return kind

    def codes(self) -> list[str]:
        return sorted(self._kinds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "KindRegistry":
        """Build the payslip and fiscal ledger kinds with configured limits."""
        ledger_bytes = settings.ledger_max_file_mb * MEGABYTE
        return cls(
            [
                DocumentKind(
                    code="payslip",
                    label="Payslip",
                    worker_code="FOLHA_PAGAMENTO",
                    extensions=(".pdf",),
                    media_types=("application/pdf",),
                    max_file_bytes=settings.payslip_max_file_mb * MEGABYTE,
                    batch_cap=settings.payslip_batch_cap,
                    content_field="pdf_base64",
                ),
                DocumentKind(
                    code="sped_icms_ipi",
                    label="SPED ICMS IPI",
                    worker_code="ICMS_IPI",
                    extensions=(".txt",),
                    media_types=("text/plain",),
                    max_file_bytes=ledger_bytes,
                    batch_cap=settings.ledger_batch_cap,
                    content_field="txt_base64",
                ),
                DocumentKind(
                    code="sped_contribuicoes",
                    label="SPED Contribuições",
                    worker_code="CONTRIBUICOES",
                    extensions=(".txt",),
                    media_types=("text/plain",),
                    max_file_bytes=ledger_bytes,
                    batch_cap=settings.ledger_batch_cap,
                    content_field="txt_base64",
                ),
            ]
        )
