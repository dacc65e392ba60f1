#!/usr/bin/env python3
"""
Startup script for the Wardrobe Media API
"""

import argparse
import os
import sys

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Start the Wardrobe Media API")
    parser.add_argument("--host", help="Host to bind to")
    parser.add_argument("--port", type=int, help="Port to bind to")
    parser.add_argument("--workers", type=int, help="Number of worker processes")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--config", help="Path to .env file")
    parser.add_argument("--remover", choices=["rembg", "segformer", "border"], help="Background removal backend")
    parser.add_argument("--blob-backend", choices=["memory", "local", "s3"], help="Where blobs are stored")

    args = parser.parse_args()

    # Environment must be in place before config is imported
    if args.config:
        from dotenv import load_dotenv
        load_dotenv(args.config)
    if args.remover:
        os.environ["BACKGROUND_REMOVER"] = args.remover
    if args.blob_backend:
        os.environ["BLOB_BACKEND"] = args.blob_backend

    from config import config

    host = args.host or config.host
    port = args.port or config.port
    workers = args.workers or config.workers

    warnings = config.validate()
    if warnings:
        print("⚠️  Configuration warnings:")
        for warning in warnings:
            print(f"   - {warning}")
        print()

    print("🎯 Wardrobe Media API")
    print(f"   Version: {config.version}")
    print(f"   Host: {host}:{port}")
    print(f"   Workers: {workers}")
    print(f"   Derivation workers: {config.num_workers}")
    print(f"   Background remover: {config.background_remover}")
    print(f"   Blob backend: {config.blob_backend}")
    print(f"   File size limit: {config.max_upload_mb}MB")
    print()

    try:
        uvicorn.run(
            "main:app",
            host=host,
            port=port,
            workers=workers if not args.reload else 1,
            reload=args.reload or config.reload,
            log_level=config.log_level.lower(),
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down gracefully...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
