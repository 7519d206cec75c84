"""Signing key management.

For every target, keys are restored from build-mods when available, otherwise
generated with ``make_key`` and backed up. The AVB key and its public key
metadata are created when missing. Magisk rooting additionally needs avbroot
style ``avb.key``/``ota.key``/``ota.crt``. fs-verity keys are shared across
targets.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from galley.builds.phases import BuildContext, require_root_tools
from galley.errors import GalleyError, RetryExhaustedError
from galley.types import Phase, RootType

logger = logging.getLogger(__name__)

KEY_NAMES = (
    "releasekey",
    "platform",
    "shared",
    "media",
    "verity",
    "networkstack",
    "bluetooth",
    "sdk_sandbox",
)

# Number of .pk8 files that marks a complete key set
MIN_KEY_COUNT = 7

CERT_VALIDITY_DAYS = "10000"


@contextmanager
def passphrase_file(passphrase: str) -> Iterator[Path]:
    """Write a pass-phrase to a private temp file for the duration of a block."""
    fd, name = tempfile.mkstemp(prefix="galley-pass-")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(passphrase)
        yield path
    finally:
        path.unlink(missing_ok=True)


def subject(ctx: BuildContext) -> str:
    return f"/CN={ctx.settings.cn}/"


def generate_avb_key(ctx: BuildContext, dest: Path, passphrase: str) -> None:
    """Create a 4096-bit RSA AVB key in scrypt-protected PKCS#8 form."""
    rsa = ctx.runner.run(["openssl", "genrsa", "4096"], capture=True)
    ctx.runner.run(
        [
            "openssl", "pkcs8", "-topk8", "-scrypt",
            "-out", str(dest),
            "-passout", f"pass:{passphrase}",
        ],
        input=rsa.stdout,
        secrets=[passphrase],
    )


def extract_avb_public_key(
    ctx: BuildContext, key: Path, output: Path, passphrase: str
) -> None:
    """Write AVB public key metadata with avbtool."""
    avbtool = ctx.workdir / "external" / "avb" / "avbtool.py"
    cmd = [str(avbtool), "extract_public_key", "--key", str(key), "--output", str(output)]
    if not passphrase:
        ctx.runner.run(cmd)
        return
    with passphrase_file(passphrase) as pass_path:
        ctx.runner.run([*cmd, "--passphrase_file", str(pass_path)])


def generate_key_set(ctx: BuildContext, keys_dir: Path) -> None:
    """Generate a full key set for a new target and back it up."""
    passphrase = ctx.settings.passphrase
    make_key = ctx.workdir / "development" / "tools" / "make_key"

    keys_dir.mkdir(parents=True, exist_ok=True)
    for name in KEY_NAMES:
        # make_key prompts for a password; EOF means none
        ctx.runner.run([str(make_key), name, subject(ctx)], cwd=keys_dir, input=b"")

    generate_avb_key(ctx, keys_dir / "avb.pem", "")
    extract_avb_public_key(ctx, keys_dir / "avb.pem", keys_dir / "avb_pkmd.bin", "")

    if passphrase:
        logger.info("Encrypting your keys...")
        ctx.runner.run(
            [str(ctx.workdir / "script" / "encrypt-keys"), str(keys_dir)],
            cwd=keys_dir,
            input=f"\n{passphrase}\n{passphrase}\n",
        )
    else:
        logger.warning("Your keys are NOT encrypted! Set CERTPASS to encrypt!")

    backup = ctx.build_mods / "keys" / keys_dir.name
    shutil.copytree(keys_dir, backup, dirs_exist_ok=True)


def ensure_existing_keys(ctx: BuildContext, keys_dir: Path) -> None:
    """Fill in AVB key material missing from an existing key set."""
    passphrase = ctx.settings.passphrase
    if len(list(keys_dir.glob("*.pk8"))) >= MIN_KEY_COUNT:
        logger.info("Keys for %s exist, skipping recreation", keys_dir.name)

    avb_pem = keys_dir / "avb.pem"
    if avb_pem.exists():
        logger.info("AVB key exists for %s", keys_dir.name)
    else:
        generate_avb_key(ctx, avb_pem, passphrase)

    pkmd = keys_dir / "avb_pkmd.bin"
    if pkmd.exists():
        logger.info("Public key exists for %s", keys_dir.name)
    else:
        extract_avb_public_key(ctx, avb_pem, pkmd, passphrase)


def prepare_root_keys(ctx: BuildContext, keys_dir: Path) -> None:
    """Derive the avbroot signing keys and OTA certificate."""
    passphrase = ctx.settings.passphrase
    avb_key = keys_dir / "avb.key"
    ota_key = keys_dir / "ota.key"

    shutil.copyfile(keys_dir / "avb.pem", avb_key)
    shutil.copyfile(avb_key, ota_key)

    ctx.runner.run(
        [
            str(ctx.root_tools.avbroot), "key", "extract-avb",
            "-k", str(avb_key),
            "--output", str(keys_dir / "avb_pkmd.bin"),
            "--pass-env-var", "PASSPHRASE_AVB",
        ],
        env_override={"PASSPHRASE_AVB": passphrase},
    )

    cmd = [
        "openssl", "req", "-new", "-x509", "-sha256",
        "-key", str(ota_key),
        "-out", str(keys_dir / "ota.crt"),
        "-days", CERT_VALIDITY_DAYS,
        "-subj", subject(ctx),
    ]
    if passphrase:
        cmd += ["-passin", f"pass:{passphrase}"]
    ctx.runner.run(cmd, secrets=[passphrase])

    backup = ctx.build_mods / "keys" / keys_dir.name
    backup.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(avb_key, backup / "avb.key")


def manage_target_keys(ctx: BuildContext, target: str) -> None:
    """Restore, complete or generate the keys of one target."""
    keys_dir = ctx.workdir / "keys" / target
    stored = ctx.build_mods / "keys" / target

    if stored.exists():
        if keys_dir.exists():
            logger.warning(
                "Key directory exists for %s, not recreating or replacing!", target
            )
        else:
            logger.info("Copying keys for %s from build_mods", target)
            shutil.copytree(stored, keys_dir)

    if keys_dir.exists():
        ensure_existing_keys(ctx, keys_dir)
    else:
        logger.info("Generating %s keys", target)
        generate_key_set(ctx, keys_dir)

    if ctx.root_type is RootType.MAGISK:
        prepare_root_keys(ctx, keys_dir)


def ensure_fsverity_keys(ctx: BuildContext) -> None:
    """Reuse or create the fs-verity key and install its DER certificate."""
    fsverity = ctx.build_mods / "fs-verity"
    cert = fsverity / "fsverity_cert.0.der"
    security = ctx.workdir / "build" / "make" / "target" / "product" / "security"
    security.mkdir(parents=True, exist_ok=True)

    if cert.exists():
        logger.info("fs-verity keys exist, not recreating")
    else:
        fsverity.mkdir(parents=True, exist_ok=True)
        ctx.runner.run(
            [
                "openssl", "genpkey", "-algorithm", "rsa",
                "-pkeyopt", "rsa_keygen_bits:4096",
                "-out", "fsverity.key",
            ],
            cwd=fsverity,
        )
        ctx.runner.run(
            [
                "openssl", "pkcs8", "-topk8",
                "-in", "fsverity.key",
                "-out", "fsverity_private_key.0.pk8",
                "-nocrypt",
            ],
            cwd=fsverity,
        )
        ctx.runner.run(
            [
                "openssl", "req", "-new", "-x509", "-sha256",
                "-key", "fsverity_private_key.0.pk8",
                "-out", cert.name,
                "-days", CERT_VALIDITY_DAYS,
                "-outform", "DER",
                "-subj", subject(ctx),
            ],
            cwd=fsverity,
        )
    shutil.copyfile(cert, security / cert.name)


def run_keys(ctx: BuildContext) -> None:
    """Manage signing keys for every target.

    Per-target failures are isolated; fs-verity failures abort the phase.

    Raises:
        PrerequisiteError: If magisk rooting is requested but avbroot is unavailable.
    """
    if ctx.root_type is RootType.MAGISK:
        try:
            ctx.root_tools.ensure_avbroot()
        except RetryExhaustedError as e:
            logger.error("%s", e)
        require_root_tools(ctx)

    for target in ctx.active_targets(Phase.KEYS):
        try:
            manage_target_keys(ctx, target)
        except (GalleyError, OSError) as e:
            error = e if isinstance(e, GalleyError) else GalleyError(str(e), code="key_error")
            ctx.record_failure(target, Phase.KEYS, error)

    ensure_fsverity_keys(ctx)
    ctx.notify("Keys managed successfully")


__all__ = [
    "KEY_NAMES",
    "ensure_existing_keys",
    "ensure_fsverity_keys",
    "generate_avb_key",
    "generate_key_set",
    "manage_target_keys",
    "prepare_root_keys",
    "run_keys",
]
