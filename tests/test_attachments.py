import base64
import io
import unittest

from pypdf import PdfWriter

from llm_switchboard.attachments import (
    DEFAULT_LIMITS,
    MB,
    AttachmentAdapter,
    FileData,
    ImageContent,
    ProviderAttachmentLimits,
    TextContent,
    Unsupported,
    classify,
)
from llm_switchboard.errors import AttachmentError

from tests.fakes import SizedFile

PNG = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 3 + b"\x00" * 224


class AttachmentRoundTripTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = AttachmentAdapter()
        self.png = FileData(name="pixel.png", mime_type="image/png", data=PNG)

    def test_png_for_anthropic_uses_base64_source(self) -> None:
        self.assertEqual(len(PNG), 1000)
        report = self.adapter.validate([self.png], "anthropic")
        self.assertTrue(report.valid)

        refs = self.adapter.process([self.png], "anthropic")
        content = self.adapter.format_for_provider(refs, "anthropic")

        self.assertEqual(
            content,
            [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": "image/png",
                        "data": base64.b64encode(PNG).decode("ascii"),
                    },
                }
            ],
        )
        self.assertEqual(refs[0].size, 1000)
        self.assertEqual(refs[0].kind, "image")

    def test_png_for_openai_uses_data_url(self) -> None:
        refs = self.adapter.process([self.png], "openai")
        block = refs[0].payload

        self.assertEqual(block["type"], "image_url")
        self.assertEqual(
            block["image_url"]["url"],
            "data:image/png;base64," + base64.b64encode(PNG).decode("ascii"),
        )
        self.assertEqual(block["image_url"]["detail"], "auto")

    def test_png_for_gemini_uses_inline_data(self) -> None:
        refs = self.adapter.process([self.png], "gemini")
        self.assertEqual(
            refs[0].payload,
            {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(PNG).decode("ascii")}},
        )

    def test_block_order_per_provider(self) -> None:
        gemini = self.adapter.format_for_provider(
            self.adapter.process([self.png], "gemini"), "gemini", text="what is this?"
        )
        self.assertIn("inlineData", gemini[0])
        self.assertEqual(gemini[1], {"text": "what is this?"})

        openai = self.adapter.format_for_provider(
            self.adapter.process([self.png], "openai"), "openai", text="what is this?"
        )
        self.assertEqual(openai[0], {"type": "text", "text": "what is this?"})
        self.assertEqual(openai[1]["type"], "image_url")

    def test_refs_for_another_provider_are_refused(self) -> None:
        refs = self.adapter.process([self.png], "openai")
        with self.assertRaises(AttachmentError):
            self.adapter.format_for_provider(refs, "anthropic")

    def test_every_provider_accepts_files_within_limits(self) -> None:
        for provider_id, limits in DEFAULT_LIMITS.items():
            with self.subTest(provider=provider_id):
                files = [
                    FileData(name=f"note{i}.txt", mime_type="text/plain", data=f"note {i}".encode())
                    for i in range(limits.max_files)
                ]
                self.assertTrue(self.adapter.validate(files, provider_id).valid)
                refs = self.adapter.process(files, provider_id)
                self.assertEqual(len(refs), len(files))
                self.assertEqual(
                    len(self.adapter.format_for_provider(refs, provider_id)), len(files)
                )


class AttachmentLimitTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = AttachmentAdapter()

    def test_too_many_files_for_provider(self) -> None:
        files = [FileData(name=f"f{i}.txt", mime_type="text/plain", data=b"x") for i in range(6)]

        report = self.adapter.validate(files, "anthropic")
        self.assertFalse(report.valid)
        self.assertEqual([name for name, _ in report.failures], ["f5.txt"])

        with self.assertRaises(AttachmentError) as ctx:
            self.adapter.process(files, "anthropic")
        self.assertEqual(ctx.exception.failures[0][0], "f5.txt")

    def test_oversized_file_for_provider(self) -> None:
        for provider_id, limits in DEFAULT_LIMITS.items():
            with self.subTest(provider=provider_id):
                big = SizedFile(name="big.txt", mime_type="text/plain", size=limits.max_file_size + 1)
                with self.assertRaises(AttachmentError):
                    self.adapter.process([big], provider_id)

    def test_unsupported_type_is_reported_per_file(self) -> None:
        files = [
            FileData(name="ok.md", mime_type="text/markdown", data=b"# hi"),
            FileData(name="archive.zip", mime_type="application/zip", data=b"PK"),
        ]
        report = self.adapter.validate(files, "openai")

        self.assertEqual([r.valid for r in report.results], [True, False])
        self.assertIn("application/zip", report.results[1].error)

    def test_deepseek_refuses_images(self) -> None:
        png = FileData(name="pixel.png", mime_type="image/png", data=PNG)
        with self.assertRaises(AttachmentError):
            self.adapter.process([png], "deepseek")

    def test_global_caps_apply_before_provider_rules(self) -> None:
        images = [SizedFile(name=f"img{i}.png", mime_type="image/png", size=20 * MB) for i in range(3)]
        with self.assertRaises(AttachmentError) as ctx:
            self.adapter.validate(images, "gemini")
        self.assertIn("50MB", str(ctx.exception))

        notes = [SizedFile(name=f"n{i}.txt", mime_type="text/plain", size=10) for i in range(11)]
        with self.assertRaises(AttachmentError):
            self.adapter.check_global_limits(notes)

    def test_unknown_provider(self) -> None:
        with self.assertRaises(AttachmentError):
            self.adapter.validate([], "mystery")

    def test_registered_provider_gets_own_rules(self) -> None:
        self.adapter.register_provider("relay", ProviderAttachmentLimits(1 * MB, 1, ("text/*",)))
        note = FileData(name="a.txt", mime_type="text/plain", data=b"hello")

        refs = self.adapter.process([note], "relay")
        self.assertEqual(refs[0].payload, {"type": "text", "text": "hello"})


class ClassificationTests(unittest.TestCase):
    def test_textual_application_types_decode_as_text(self) -> None:
        data = FileData(name="cfg.json", mime_type="application/json", data=b'{"a": 1}')
        self.assertEqual(classify(data), TextContent('{"a": 1}'))

        refs = AttachmentAdapter().process([data], "anthropic")
        self.assertEqual(refs[0].payload, {"type": "text", "text": '{"a": 1}'})

    def test_invalid_utf8_is_unsupported(self) -> None:
        data = FileData(name="blob.txt", mime_type="text/plain", data=b"\xff\xfe\x00")
        self.assertIsInstance(classify(data), Unsupported)
        with self.assertRaises(AttachmentError):
            AttachmentAdapter().process([data], "openai")

    def test_image_keeps_bytes(self) -> None:
        content = classify(FileData(name="p.png", mime_type="IMAGE/PNG", data=PNG))
        self.assertIsInstance(content, ImageContent)
        self.assertEqual(content.mime_type, "image/png")

    def test_pdf_text_is_extracted(self) -> None:
        pdf = FileData(name="doc.pdf", mime_type="application/pdf", data=_pdf_with_text(b"Hello PDF"))
        content = classify(pdf)

        self.assertIsInstance(content, TextContent)
        self.assertIn("Hello PDF", content.text)

    def test_pdf_without_text_is_unsupported(self) -> None:
        writer = PdfWriter()
        writer.add_blank_page(width=72, height=72)
        buffer = io.BytesIO()
        writer.write(buffer)

        blank = FileData(name="blank.pdf", mime_type="application/pdf", data=buffer.getvalue())
        self.assertIsInstance(classify(blank), Unsupported)

    def test_from_path_guesses_mime_type(self) -> None:
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "notes.txt"
            path.write_text("remember")
            data = FileData.from_path(path)

        self.assertEqual(data.mime_type, "text/plain")
        self.assertEqual(data.size, 8)


def _pdf_with_text(text: bytes) -> bytes:
    content = b"BT /F1 18 Tf 20 80 Td (" + text + b") Tj ET"
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 300 144] /Contents 4 0 R "
        b"/Resources << /Font << /F1 5 0 R >> >> >>",
        b"<< /Length %d >>\nstream\n" % len(content) + content + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref = len(out)
    out += b"xref\n0 %d\n0000000000 65535 f \n" % (len(objects) + 1)
    out += b"".join(b"%010d 00000 n \n" % offset for offset in offsets)
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (
        len(objects) + 1,
        xref,
    )
    return bytes(out)


if __name__ == "__main__":
    unittest.main()
