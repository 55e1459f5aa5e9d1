"""
Upload Security Validation

Screens raw file bytes before any processing. The check is pure: it never
writes, moves or quarantines anything. The ingestion orchestrator decides
what a failed check means for the document.
"""

import io
import re
import hashlib
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)

MIME_PDF = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_TEXT = "text/plain"

ALLOWED_MIME_TYPES = frozenset([MIME_PDF, MIME_DOCX, MIME_TEXT])

EXTENSION_MIME_TYPES = {
    ".pdf": MIME_PDF,
    ".docx": MIME_DOCX,
    ".txt": MIME_TEXT,
}

BLOCKED_EXTENSIONS = frozenset([
    ".exe", ".bat", ".cmd", ".com", ".scr", ".vbs", ".js", ".jar",
    ".sh", ".ps1", ".dll", ".msi", ".app", ".deb", ".rpm",
])

EXECUTABLE_SIGNATURES = {
    b"MZ": "Windows PE executable",
    b"\x7fELF": "ELF executable",
    b"\xfe\xed\xfa\xce": "Mach-O executable",
    b"\xfe\xed\xfa\xcf": "Mach-O executable",
    b"\xce\xfa\xed\xfe": "Mach-O executable",
    b"\xcf\xfa\xed\xfe": "Mach-O executable",
    b"\xca\xfe\xba\xbe": "Mach-O universal binary",
}

SCRIPT_PATTERNS = [
    (re.compile(rb"<script[\s>]", re.IGNORECASE), "Embedded script tag"),
    (re.compile(rb"<iframe[\s>]", re.IGNORECASE), "Embedded iframe"),
    (re.compile(rb"javascript:", re.IGNORECASE), "JavaScript URL"),
    (re.compile(rb"vbscript:", re.IGNORECASE), "VBScript URL"),
    (re.compile(rb"\bon(?:load|error|click)\s*=", re.IGNORECASE), "Inline event handler"),
    (re.compile(rb"\beval\s*\("), "eval() call"),
    (re.compile(rb"document\.write\s*\("), "document.write() call"),
    (re.compile(rb"TVqQAAMAAAAEAAAA"), "Base64-encoded executable"),
]


@dataclass
class SecurityConfig:
    """Configuration for upload screening."""
    max_file_size_mb: float = 50
    allowed_mime_types: frozenset = ALLOWED_MIME_TYPES
    scan_archive_members: bool = True


@dataclass
class SecurityIssue:
    """A single finding from the security screen."""
    type: str
    severity: str
    description: str

    def to_dict(self) -> dict:
        return {"type": self.type, "severity": self.severity, "description": self.description}


@dataclass
class SecurityCheckResult:
    """Outcome of screening one upload."""
    is_valid: bool
    issues: list[SecurityIssue] = field(default_factory=list)
    detected_mime_type: Optional[str] = None
    size_bytes: int = 0
    sha256: str = ""

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "issues": [issue.to_dict() for issue in self.issues],
            "detected_mime_type": self.detected_mime_type,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
        }

    def summary(self) -> str:
        """One-line description of the blocking issues."""
        blocking = [i.description for i in self.issues if i.severity in ("high", "critical")]
        return "; ".join(blocking) or "no blocking issues"


def sniff_mime_type(data: bytes) -> Optional[str]:
    """
    Detect the file type from its leading bytes.

    Returns None when the bytes match none of the supported formats.
    """
    if not data:
        return None
    if data.startswith(b"%PDF-"):
        return MIME_PDF
    if data.startswith(b"PK\x03\x04"):
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                if "word/document.xml" in archive.namelist():
                    return MIME_DOCX
        except zipfile.BadZipFile:
            return None
        return "application/zip"
    if _looks_like_text(data):
        return MIME_TEXT
    return None


def _looks_like_text(data: bytes) -> bool:
    sample = data[:4096]
    if sample.startswith((b"\xff\xfe", b"\xfe\xff")):
        return True
    if b"\x00" in sample:
        return False
    for encoding in ("utf-8", "cp1256"):
        try:
            sample.decode(encoding)
            return True
        except UnicodeDecodeError:
            # A multi-byte UTF-8 sequence may be cut at the sample boundary
            if encoding == "utf-8" and len(data) > len(sample):
                try:
                    sample[:-3].decode(encoding)
                    return True
                except UnicodeDecodeError:
                    pass
    return False


class SecurityValidator:
    """
    Screens uploads before extraction.

    Checks:
    - Size ceiling and empty files
    - Blocked file extensions
    - Declared vs. detected MIME type
    - Executable signatures in the file header
    - Script injection patterns in text content
    - Executables hidden inside DOCX archives
    """

    def __init__(self, config: Optional[SecurityConfig] = None):
        self.config = config or SecurityConfig()

    def validate(
        self,
        data: bytes,
        declared_mime_type: str,
        organization_id: str,
        user_id: str,
        filename: str = "",
        max_size_bytes: Optional[int] = None,
    ) -> SecurityCheckResult:
        """
        Screen raw upload bytes.

        Args:
            data: Raw file bytes
            declared_mime_type: MIME type claimed by the uploader
            organization_id: Owning organization (for audit logging)
            user_id: Uploading user (for audit logging)
            filename: Original filename, used for the extension check
            max_size_bytes: Optional tighter ceiling (e.g. from a quota tier)

        Returns:
            SecurityCheckResult; invalid when any high or critical issue exists
        """
        data = data or b""
        issues: list[SecurityIssue] = []
        size = len(data)

        ceiling = int(self.config.max_file_size_mb * 1024 * 1024)
        if max_size_bytes is not None:
            ceiling = min(ceiling, max_size_bytes)

        if size == 0:
            issues.append(SecurityIssue("size_anomaly", "high", "File is empty"))
        elif size > ceiling:
            issues.append(SecurityIssue(
                "size_limit", "high",
                f"File size {size} bytes exceeds limit of {ceiling} bytes",
            ))

        extension = PurePosixPath(filename.lower()).suffix if filename else ""
        if extension in BLOCKED_EXTENSIONS:
            issues.append(SecurityIssue(
                "blocked_extension", "critical", f"File extension {extension} is not allowed",
            ))

        if declared_mime_type not in self.config.allowed_mime_types:
            issues.append(SecurityIssue(
                "mime_not_allowed", "high", f"MIME type {declared_mime_type} is not allowed",
            ))

        detected = sniff_mime_type(data)
        if size and detected != declared_mime_type:
            issues.append(SecurityIssue(
                "mime_mismatch", "high",
                f"Declared {declared_mime_type} but content looks like {detected or 'unknown'}",
            ))
        elif extension in EXTENSION_MIME_TYPES and EXTENSION_MIME_TYPES[extension] != declared_mime_type:
            issues.append(SecurityIssue(
                "extension_mismatch", "medium",
                f"Extension {extension} does not match declared type {declared_mime_type}",
            ))

        issues.extend(self._scan_signatures(data, detected))
        if detected == MIME_DOCX and self.config.scan_archive_members:
            issues.extend(self._scan_archive(data))

        is_valid = not any(issue.severity in ("high", "critical") for issue in issues)
        result = SecurityCheckResult(
            is_valid=is_valid,
            issues=issues,
            detected_mime_type=detected,
            size_bytes=size,
            sha256=hashlib.sha256(data).hexdigest(),
        )

        if is_valid:
            logger.info(f"Security check passed for {filename or 'upload'} (org={organization_id})")
        else:
            logger.warning(
                f"Security check rejected {filename or 'upload'} for org={organization_id} "
                f"user={user_id}: {result.summary()}"
            )
        return result

    def _scan_signatures(self, data: bytes, detected: Optional[str]) -> list[SecurityIssue]:
        issues = []

        for signature, label in EXECUTABLE_SIGNATURES.items():
            # PDF and ZIP containers legitimately carry arbitrary bytes past
            # their header, so only the file start is authoritative
            if not data.startswith(signature):
                continue
            if signature == b"MZ" and detected == MIME_TEXT:
                continue
            issues.append(SecurityIssue(
                "executable_signature", "critical", f"{label} signature detected",
            ))
            break

        # Script patterns matter for content that is rendered as text
        if detected in (MIME_TEXT, None):
            for pattern, label in SCRIPT_PATTERNS:
                if pattern.search(data):
                    issues.append(SecurityIssue("suspicious_content", "high", label))
        return issues

    def _scan_archive(self, data: bytes) -> list[SecurityIssue]:
        issues = []
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                for name in archive.namelist():
                    if PurePosixPath(name.lower()).suffix in BLOCKED_EXTENSIONS:
                        issues.append(SecurityIssue(
                            "embedded_executable", "critical",
                            f"Archive member {name} is an executable",
                        ))
                    elif name.lower().endswith("vbaproject.bin"):
                        issues.append(SecurityIssue("macro", "medium", "Document contains macros"))
        except zipfile.BadZipFile as e:
            issues.append(SecurityIssue("corrupt_archive", "high", f"Corrupt archive: {e}"))
        return issues
