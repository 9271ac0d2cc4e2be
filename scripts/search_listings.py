# Script that runs one listing search against every configured provider and writes GeoJSON
from argparse import ArgumentParser
import asyncio
import json
import logging
import sys
from pathlib import Path

from listing_search.search import aggregated_search, build_providers
from listing_search.settings import get_settings
from listing_search.utils.errors import SearchValidationError


async def main(params: dict, output: Path | None) -> int:
    providers = build_providers(get_settings())
    try:
        outcome = await aggregated_search(params, providers)
    finally:
        for provider in providers:
            await provider.aclose()

    collection = json.dumps(outcome.to_feature_collection(), indent=2)
    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(collection)
        print(f'Wrote {len(outcome.features)} features to {output}')
    else:
        print(collection)

    for name, error in outcome.failures.items():
        print(f'Provider {name} failed: {error}', file=sys.stderr)
    return 1 if outcome.partial and not outcome.features else 0


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    parser = ArgumentParser()
    parser.add_argument('--bbox', '-b', nargs=4, type=float, metavar=('WEST', 'SOUTH', 'EAST', 'NORTH'))
    parser.add_argument('--city', '-c', type=str)
    parser.add_argument('--state', '-s', type=str)
    parser.add_argument('--zip', '-z', type=str)
    parser.add_argument('--radius', '-r', type=int)
    parser.add_argument('--output', '-o', type=Path, default=None)
    args = parser.parse_args()

    params = {
        key: value for key, value in {
            'bbox': args.bbox,
            'city': args.city,
            'state': args.state,
            'zip': args.zip,
            'radius': args.radius,
        }.items() if value is not None
    }

    try:
        sys.exit(asyncio.run(main(params, args.output)))
    except SearchValidationError as e:
        print(f'{e}\n{e.summary()}', file=sys.stderr)
        sys.exit(2)
