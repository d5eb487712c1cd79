"""
WAV resampler for wsprd.

wsprd only accepts 16-bit mono WAV at 12000 Hz. KiwiSDR audio arrives at
~12 kHz (12000 exactly on most firmware, 20250 Hz on wide-band units), so
recordings are converted here before decode.

Stereo input is averaged down to mono.
"""

import logging
import wave
from math import gcd
from pathlib import Path
from typing import Tuple, Union

import numpy as np
from scipy import signal as scipy_signal

logger = logging.getLogger(__name__)

WSPRD_SAMPLE_RATE = 12000


def read_wav(path: Union[str, Path]) -> Tuple[np.ndarray, int]:
    """
    Read a 16-bit PCM WAV into a mono float array.

    Returns:
        (samples, sample_rate)
    """
    with wave.open(str(path), 'rb') as wav_file:
        channels = wav_file.getnchannels()
        sample_width = wav_file.getsampwidth()
        sample_rate = wav_file.getframerate()
        frames = wav_file.readframes(wav_file.getnframes())

    if sample_width != 2:
        raise ValueError(f"Only 16-bit WAV files are supported, got {sample_width * 8}-bit")

    samples = np.frombuffer(frames, dtype='<i2').astype(np.float64)
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples, sample_rate


def write_wav(path: Union[str, Path], samples: np.ndarray, sample_rate: int) -> None:
    """Write mono samples as 16-bit PCM, clipping to the int16 range."""
    pcm = np.clip(np.round(samples), -32768, 32767).astype('<i2')
    with wave.open(str(path), 'wb') as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm.tobytes())


def wav_sample_rate(path: Union[str, Path]) -> int:
    with wave.open(str(path), 'rb') as wav_file:
        return wav_file.getframerate()


def resample_wav(path: Union[str, Path], target_rate: int = WSPRD_SAMPLE_RATE) -> Path:
    """
    Resample a WAV file to target_rate.

    Writes <stem>_12k.wav next to the input. If the input already runs at
    target_rate the input path is returned unchanged and nothing is written.

    Raises:
        ValueError: unsupported sample format
        OSError / wave.Error: unreadable file
    """
    path = Path(path)
    source_rate = wav_sample_rate(path)
    if source_rate == target_rate:
        logger.debug(f"{path.name}: already at {target_rate} Hz")
        return path

    samples, source_rate = read_wav(path)

    divisor = gcd(source_rate, target_rate)
    up = target_rate // divisor
    down = source_rate // divisor
    logger.info(f"{path.name}: resampling {source_rate} Hz -> {target_rate} Hz (up={up}, down={down})")

    resampled = scipy_signal.resample_poly(samples, up, down)

    output_path = path.with_name(f"{path.stem}_12k.wav")
    write_wav(output_path, resampled, target_rate)
    return output_path
