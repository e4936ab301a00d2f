# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for strata.
"""
import functools
import os

import click

from ..BUILDERS.image_builder import ImageBuilder
from ..MODELS.container import PortMapping
from ..REGISTRY.image_store import ImageStore
from ..REGISTRY.layer_cache import LayerCache
from ..REGISTRY.registry_client import DirectoryRegistry
from ..RUNNERS.container_runtime import ContainerRuntime
from ..SERVICE.app import serve as serve_app
from ..UTILS.config import load_settings
from ..UTILS.errors import StrataError
from ..UTILS.hashing import short_hash
from ..UTILS.logging import configure_logging


def handle_errors(func):
    """Reports strata errors as a one-line message and exit status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StrataError as e:
            raise click.ClickException(e.message)
        except ValueError as e:
            raise click.ClickException(str(e))
    return wrapper


class Components:
    """Stores and services shared by the commands, created on first use."""

    def __init__(self, settings):
        self.settings = settings
        self._cache = None
        self._store = None

    @property
    def layer_cache(self) -> LayerCache:
        if self._cache is None:
            self._cache = LayerCache(str(self.settings.cache_dir))
        return self._cache

    @property
    def image_store(self) -> ImageStore:
        if self._store is None:
            self._store = ImageStore(str(self.settings.cache_dir))
        return self._store

    def registry(self) -> DirectoryRegistry:
        return DirectoryRegistry(str(self.settings.resolved_registry_dir), self.layer_cache, self.image_store)

    def builder(self) -> ImageBuilder:
        return ImageBuilder(self.settings, self.layer_cache, self.image_store, registry=self.registry())

    def runtime(self) -> ContainerRuntime:
        return ContainerRuntime(self.settings, self.layer_cache, self.image_store)


@click.group()
@click.option('--config', '-c', 'config_file', default=None, help='YAML settings file')
@click.option('--log-level', default=None, help='DEBUG, INFO, WARNING or ERROR')
@click.pass_context
def cli(ctx, config_file, log_level):
    """
    strata - layered image builder and runtime.

    Builds Dockerfile-style manifests into cached, content-addressed layers
    and runs the resulting images as local processes.
    """
    ctx.ensure_object(dict)
    try:
        settings = load_settings(config_file=config_file)
        if log_level:
            settings = settings.model_copy(update={"log_level": log_level.upper()})
        configure_logging(settings.log_level, structured=settings.log_structured)
    except (StrataError, ValueError) as e:
        raise click.ClickException(getattr(e, "message", str(e)))
    ctx.obj['settings'] = settings
    ctx.obj['components'] = Components(settings)


@cli.command()
@click.argument('context', default='.', type=click.Path(file_okay=False))
@click.option('--file', '-f', 'manifest', default=None, help='Manifest path (default: CONTEXT/Dockerfile)')
@click.option('--tag', '-t', default=None, help='Name and optionally a tag, e.g. hello-node:v1')
@click.option('--no-cache', is_flag=True, help='Do not reuse cached layers')
@click.pass_context
@handle_errors
def build(ctx, context, manifest, tag, no_cache):
    """Build an image from a manifest."""
    result = ctx.obj['components'].builder().build_file(manifest, context, tag=tag, no_cache=no_cache)
    click.echo(result.manifest.digest)


@cli.command()
@click.pass_context
@handle_errors
def images(ctx):
    """List stored images."""
    components = ctx.obj['components']
    store = components.image_store
    click.echo(f"{'REPOSITORY':40} {'TAG':15} {'IMAGE ID':12} {'LAYERS':>6}")
    tagged = set()
    for name, digest in store.list_tags().items():
        repository, tag = name.rsplit(':', 1)
        manifest = store.get(digest)
        layers = len(manifest.layers) if manifest else 0
        click.echo(f"{repository:40} {tag:15} {short_hash(digest):12} {layers:>6}")
        tagged.add(digest)
    for digest in store.list_digests():
        if digest not in tagged:
            manifest = store.get(digest)
            click.echo(f"{'<none>':40} {'<none>':15} {short_hash(digest):12} {len(manifest.layers):>6}")


@cli.command()
@click.argument('image')
@click.pass_context
@handle_errors
def history(ctx, image):
    """Show the layers of an image, newest first."""
    components = ctx.obj['components']
    manifest = components.image_store.require(image)
    layers = components.layer_cache.get_layers(list(manifest.layers))
    click.echo(f"{'LAYER':12}  {'SIZE':>10}  CREATED BY")
    for layer, created_by in reversed(list(zip(layers, manifest.history))):
        size = LayerCache.format_size(layer.size)
        click.echo(f"{short_hash(layer.content_hash):12}  {size:>10}  {created_by}")


@cli.command()
@click.argument('source')
@click.argument('target')
@click.pass_context
@handle_errors
def tag(ctx, source, target):
    """Create a tag TARGET that refers to SOURCE."""
    store = ctx.obj['components'].image_store
    digest = store.require(source).digest
    click.echo(store.tag(digest, target))


@cli.command()
@click.argument('image')
@click.pass_context
@handle_errors
def rmi(ctx, image):
    """Remove a tag, or an image with all its tags when given an id."""
    store = ctx.obj['components'].image_store
    digest = store.require(image).digest
    if image.startswith("sha256:") or digest.startswith("sha256:" + image):
        store.remove(digest)
        click.echo(f"Deleted: {digest}")
        return
    store.untag(image)
    click.echo(f"Untagged: {image}")
    if not store.tags_for(digest):
        store.remove(digest)
        click.echo(f"Deleted: {digest}")


@cli.command()
@click.argument('image')
@click.option('--publish', '-p', multiple=True, help='HOST:CONTAINER port mapping')
@click.option('--interactive', '-i', is_flag=True, help='Attach the terminal to the container')
@click.pass_context
@handle_errors
def run(ctx, image, publish, interactive):
    """Run an image until it exits or Ctrl+C is pressed."""
    mappings = [PortMapping.parse(value) for value in publish]
    runtime = ctx.obj['components'].runtime()
    pid = runtime.run(image, port_mapping=mappings, interactive=interactive)
    container = runtime.find_by_pid(pid)
    click.echo(f"{container.id} pid={pid} address={container.address}")
    interrupted = False
    try:
        runtime.wait(container.id)
    except KeyboardInterrupt:
        interrupted = True
        click.echo("\nStopping container...")
    exit_code = runtime.stop(container.id)
    if exit_code and not interrupted:
        raise click.ClickException(f"container exited with code {exit_code}")


@cli.command()
@click.argument('image')
@click.argument('remote_tag')
@click.pass_context
@handle_errors
def push(ctx, image, remote_tag):
    """Push IMAGE to the registry as REMOTE_TAG."""
    digest = ctx.obj['components'].registry().push(image, remote_tag)
    click.echo(digest)


@cli.command()
@click.argument('remote_tag')
@click.pass_context
@handle_errors
def pull(ctx, remote_tag):
    """Pull REMOTE_TAG from the registry."""
    digest = ctx.obj['components'].registry().pull(remote_tag)
    click.echo(digest)


@cli.command()
@click.pass_context
@handle_errors
def prune(ctx):
    """Delete untagged images and unreferenced layers."""
    components = ctx.obj['components']
    manifests = components.image_store.prune_untagged()
    stats = components.layer_cache.prune(components.image_store.referenced_layers())
    click.echo(f"Deleted images: {manifests}")
    click.echo(f"Deleted layers: {stats['removed_layers']}")
    click.echo(f"Total reclaimed space: {LayerCache.format_size(stats['freed_bytes'])}")
    click.echo(f"Cache size: {LayerCache.format_size(components.layer_cache.get_cache_size())}")


@cli.command()
@click.option('--port', '-p', type=int, default=None, help='Port to listen on (default: $PORT or 3000)')
@click.option('--host', default=None, help='Address to bind (default: $STRATA_BIND_ADDRESS)')
@click.pass_context
@handle_errors
def serve(ctx, port, host):
    """Run the hello-world service in the foreground."""
    if port is None:
        port = int(os.environ.get("PORT", ctx.obj['settings'].default_port))
    if host is None:
        host = os.environ.get("STRATA_BIND_ADDRESS", ctx.obj['settings'].bind_address)
    serve_app(port, host)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
