#!/usr/bin/env python3
"""
Tests for the main() function and command-line argument parsing.
"""

import unittest
import tempfile
import sys
from pathlib import Path
from io import StringIO
from unittest.mock import patch, MagicMock

# Add parent directory to path to import the module
sys.path.insert(0, str(Path(__file__).parent.parent))

from esp_image import main, ImageConfig


class TestMainArguments(unittest.TestCase):
    """Tests for argument parsing with the pipeline mocked out."""

    @patch('esp_image.ImageBuilder')
    def test_create_defaults(self, mock_builder_class):
        """Test that create fills in the documented defaults."""
        with patch('sys.argv', ['esp_image.py', 'create', '-o', 'disk.img', 'build/esp/']):
            main()

        config = mock_builder_class.call_args[0][0]
        self.assertEqual(config, ImageConfig(output_path='disk.img', includes=('build/esp/',)))
        mock_builder_class.return_value.build.assert_called_once()

    @patch('esp_image.ImageBuilder')
    def test_create_all_options(self, mock_builder_class):
        """Test that every create option reaches the configuration."""
        argv = ['esp_image.py', 'create', '-o', 'out.img', '-l', 'EFI', '-s', '64',
                '-z', '-t', '-f', '-p', 'fat32', '-v', 'a', 'b/']
        with patch('sys.argv', argv):
            main()

        config = mock_builder_class.call_args[0][0]
        self.assertEqual(config.includes, ('a', 'b/'))
        self.assertEqual(config.label, 'EFI')
        self.assertEqual(config.partition_mb, 64)
        self.assertTrue(config.gzip_output)
        self.assertTrue(config.trim_image)
        self.assertTrue(config.force)
        self.assertEqual(config.partition_type, 'fat32')
        self.assertTrue(config.verbose)

    @patch('esp_image.ImageBuilder')
    def test_create_long_options(self, mock_builder_class):
        """Test the long option spellings."""
        argv = ['esp_image.py', 'create', '--output', 'out.img.gz', '--label', 'X', '--size', '40',
                '--gzip', '--trim', '--force', '--partition-type', 'efi', '--verbose', 'a']
        with patch('sys.argv', argv):
            main()

        config = mock_builder_class.call_args[0][0]
        self.assertEqual(config.output_path, 'out.img.gz')
        self.assertEqual(config.partition_mb, 40)
        self.assertTrue(config.compress)

    def test_create_requires_output(self):
        """Test that a missing -o is a usage error."""
        with patch('sys.argv', ['esp_image.py', 'create', 'build/esp/']):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 2)

    def test_create_requires_paths(self):
        """Test that at least one path is a usage requirement."""
        with patch('sys.argv', ['esp_image.py', 'create', '-o', 'disk.img']):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 2)

    def test_non_numeric_size(self):
        """Test that the size must be an integer."""
        with patch('sys.argv', ['esp_image.py', 'create', '-o', 'disk.img', '-s', 'big', 'a']):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 2)

    def test_command_required(self):
        """Test that a subcommand is required."""
        with patch('sys.argv', ['esp_image.py']):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 2)

    @patch('esp_image.list_image')
    def test_ls_arguments(self, mock_list):
        """Test that ls passes its flags through."""
        with patch('sys.argv', ['esp_image.py', 'ls', '-l', 'disk.img.gz']):
            main()

        args, kwargs = mock_list.call_args
        self.assertEqual(args[0], 'disk.img.gz')
        self.assertTrue(kwargs['long_form'])
        self.assertFalse(kwargs['verbose'])

    @patch('esp_image.copy_image')
    def test_cp_arguments(self, mock_copy):
        """Test that cp passes image and destination through."""
        with patch('sys.argv', ['esp_image.py', 'cp', '-v', 'disk.img', 'out/']):
            main()

        mock_copy.assert_called_once_with('disk.img', 'out/', verbose=True)

    @patch('esp_image.ImageBuilder')
    def test_keyboard_interrupt(self, mock_builder_class):
        """Test handling of KeyboardInterrupt."""
        mock_builder_class.return_value.build.side_effect = KeyboardInterrupt()

        with patch('sys.argv', ['esp_image.py', 'create', '-o', 'disk.img', 'a']):
            with patch('sys.stderr', StringIO()) as mock_stderr:
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 130)
        self.assertIn("Interrupted", mock_stderr.getvalue())

    @patch('esp_image.ImageBuilder')
    def test_exception_handling(self, mock_builder_class):
        """Test handling of general exceptions."""
        mock_builder = MagicMock()
        mock_builder.build.side_effect = Exception("Test error")
        mock_builder_class.return_value = mock_builder

        with patch('sys.argv', ['esp_image.py', 'create', '-o', 'disk.img', 'a']):
            with patch('sys.stderr', StringIO()) as mock_stderr:
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 1)
        self.assertIn("Error: Test error", mock_stderr.getvalue())


class TestMainEndToEnd(unittest.TestCase):
    """Tests running real commands against temporary directories."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.app = self.root / "app"
        self.app.mkdir()
        (self.app / "hello.txt").write_bytes(b"hi")
        self.output = self.root / "disk.img"

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    def run_main(self, *args):
        """Run main() and return (exit code, stdout, stderr)."""
        stdout = StringIO()
        stderr = StringIO()
        code = 0
        with patch('sys.argv', ['esp_image.py'] + [str(arg) for arg in args]):
            with patch('sys.stdout', stdout), patch('sys.stderr', stderr):
                try:
                    main()
                except SystemExit as e:
                    code = e.code
        return code, stdout.getvalue(), stderr.getvalue()

    def test_create_ls_cp(self):
        """Test building an image and reading it back through the CLI."""
        code, _, _ = self.run_main('create', '-o', self.output, '-s', '64', str(self.app) + '/')
        self.assertEqual(code, 0)
        self.assertEqual(self.output.stat().st_size, 68 * 1024 * 1024)

        code, stdout, _ = self.run_main('ls', self.output)
        self.assertEqual(code, 0)
        self.assertEqual(stdout, "/hello.txt\n")

        dest = self.root / "extracted"
        code, _, _ = self.run_main('cp', self.output, dest)
        self.assertEqual(code, 0)
        self.assertEqual((dest / "hello.txt").read_bytes(), b"hi")

    def test_gz_output(self):
        """Test that a '.gz' output is compressed without -z."""
        output = self.root / "disk.img.gz"

        code, _, _ = self.run_main('create', '-o', output, '-s', '64', self.app)

        self.assertEqual(code, 0)
        with open(output, "rb") as f:
            self.assertEqual(f.read(2), b"\x1f\x8b")

        code, stdout, _ = self.run_main('ls', output)
        self.assertEqual(stdout, "/app\n/app/hello.txt\n")

    def test_existing_output(self):
        """Test that an existing output fails without --force and succeeds with it."""
        self.output.write_bytes(b"keep me")

        code, _, stderr = self.run_main('create', '-o', self.output, '-s', '64', self.app)
        self.assertEqual(code, 1)
        self.assertIn("exists", stderr)
        self.assertEqual(self.output.read_bytes(), b"keep me")

        code, _, _ = self.run_main('create', '-o', self.output, '-s', '64', '--force', self.app)
        self.assertEqual(code, 0)
        self.assertEqual(self.output.stat().st_size, 68 * 1024 * 1024)

    def test_zero_size(self):
        """Test that a zero partition size is rejected."""
        code, _, stderr = self.run_main('create', '-o', self.output, '-s', '0', self.app)

        self.assertEqual(code, 1)
        self.assertIn("Error:", stderr)
        self.assertFalse(self.output.exists())

    def test_ls_missing_image(self):
        """Test that listing a missing image fails with exit code 1."""
        code, stdout, stderr = self.run_main('ls', self.root / "missing.img")

        self.assertEqual(code, 1)
        self.assertEqual(stdout, "")
        self.assertIn("Error:", stderr)


if __name__ == '__main__':
    unittest.main()
